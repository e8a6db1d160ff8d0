"""Fixed-rate dispatch core.

A single asyncio loop ticks at ``1_000_000 // rps`` microseconds, hands a
freshly generated message to the next connection of a round-robin pool and
fires the POST as an independent task. The loop never waits for a send to
finish; in-flight sends are joined when the loop stops.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import signal
import time
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import aiohttp
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from message_core import (
    ConfigurationError,
    IdPool,
    MessageGenerator,
    TemplateStore,
    load_document,
    load_id_list_file,
    load_template_file,
    log_pool_sizes,
)

LOGGER = logging.getLogger("json_traffic")

JSON_CONTENT_TYPE = "application/json"


def parse_target(target: str) -> URL:
    """Return the target as an absolute http(s) URL.

    A bare ``host:port`` is expanded to ``http://host:port``.
    """

    text = str(target).strip()
    if not (text.startswith("http://") or text.startswith("https://")):
        text = f"http://{text}"
    try:
        url = URL(text)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid target URL {target!r}: {exc}") from exc
    if not url.is_absolute() or not url.host:
        raise ConfigurationError(f"invalid target URL {target!r}")
    return url


def _add_header(headers: CIMultiDict, name: str, value: str) -> None:
    if any(ch in text for text in (name, value) for ch in "\r\n"):
        raise ConfigurationError(f"header {name!r} contains a line break")
    headers.add(name, value)


def parse_headers(entries: Any) -> CIMultiDict:
    """Build request headers from ``"Name: Value"`` lines or a mapping.

    Lines without a colon or with an empty name are skipped. Mapping values
    may be lists to send a header more than once. A CR or LF inside a name
    or value is a ConfigurationError.
    """

    headers: CIMultiDict = CIMultiDict()
    if isinstance(entries, Mapping):
        for name, value in entries.items():
            values = value if isinstance(value, list) else [value]
            for item in values:
                _add_header(headers, str(name).strip(), str(item).strip())
    else:
        for line in entries or ():
            name, sep, value = str(line).partition(":")
            name = name.strip()
            if not sep or not name:
                continue
            _add_header(headers, name, value.strip())

    headers.setdefault("Content-Type", JSON_CONTENT_TYPE)
    return headers


def read_headers_file(path: Path) -> List[str]:
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ConfigurationError(f"cannot read headers file {path}: {exc}") from exc


@dataclass(frozen=True)
class SendResult:
    """Outcome of one POST, handed to the logger."""

    connection_id: int
    timestamp: float
    request_body: bytes
    status: Optional[int] = None
    response_body: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Connection:
    """One logical sender slot: target URL, headers and its own HTTP session."""

    def __init__(
        self,
        connection_id: int,
        url: URL,
        headers: Optional[CIMultiDict] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.id = connection_id
        self.url = url
        self.headers = CIMultiDictProxy(CIMultiDict(headers or {}))
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, url={str(self.url)!r})"

    async def open(self) -> None:
        if self._session is not None:
            return
        kwargs: Dict[str, Any] = {}
        if self.timeout_seconds:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=self.timeout_seconds)
        self._session = aiohttp.ClientSession(**kwargs)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def send(self, message: bytes) -> SendResult:
        """POST ``message`` and return the status and body, or the transport error."""

        assert self._session is not None, "Connection must be opened before sending"
        timestamp = time.time()
        try:
            async with self._session.post(self.url, data=message, headers=self.headers) as response:
                body = await response.text(errors="replace")
                return SendResult(self.id, timestamp, message, status=response.status, response_body=body)
        except asyncio.TimeoutError:
            return SendResult(self.id, timestamp, message, error="timeout")
        except aiohttp.ClientError as exc:
            return SendResult(self.id, timestamp, message, error=f"{exc.__class__.__name__}: {exc}")
        except Exception as exc:
            LOGGER.exception("Unexpected error during request on conn=%d: %s", self.id, exc)
            return SendResult(self.id, timestamp, message, error=f"{exc.__class__.__name__}: {exc}")


class ConnectionPool:
    """Fixed, ordered set of connections. ``async with`` opens and closes their sessions."""

    def __init__(self, connections: Sequence[Connection]) -> None:
        self.connections = tuple(connections)

    @classmethod
    def build(
        cls,
        url: URL,
        headers: CIMultiDict,
        count: int,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> "ConnectionPool":
        if count <= 0:
            raise ConfigurationError("at least one connection is required")
        return cls(
            [Connection(conn_id, url, headers, timeout_seconds=timeout_seconds) for conn_id in range(1, count + 1)]
        )

    def __len__(self) -> int:
        return len(self.connections)

    def __getitem__(self, index: int) -> Connection:
        return self.connections[index]

    async def __aenter__(self) -> "ConnectionPool":
        for connection in self.connections:
            await connection.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        for connection in self.connections:
            await connection.close()


def log_send_result(result: SendResult) -> None:
    body = result.request_body.decode("utf-8", errors="replace")
    if result.error is not None:
        LOGGER.warning(
            "conn=%d error=%s body=%s",
            result.connection_id,
            result.error,
            body,
            extra={"send_result": result},
        )
        return
    LOGGER.info(
        "conn=%d status=%d body=%s response=%s",
        result.connection_id,
        result.status,
        body,
        result.response_body,
        extra={"send_result": result},
    )


class Dispatcher:
    """Rate-limited round-robin dispatch loop."""

    def __init__(self, generator: MessageGenerator, pool: ConnectionPool, rps: int) -> None:
        if rps <= 0:
            raise ConfigurationError("rps must be a positive integer")
        if len(pool) == 0:
            raise ConfigurationError("at least one connection is required")

        self.generator = generator
        self.pool = pool
        self.rps = rps
        # Truncating division: rates that do not divide 1e6 run slightly fast.
        self.delay_microseconds = 1_000_000 // rps
        if self.delay_microseconds <= 0:
            raise ConfigurationError("rps cannot exceed 1000000 (tick interval would be zero)")
        self.dispatched = 0
        self._cursor = 0
        self._stop_event = asyncio.Event()
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def stop(self) -> None:
        self._stop_event.set()

    def next_connection(self) -> Connection:
        """Return the connection under the cursor and advance the cursor."""

        connection = self.pool[self._cursor]
        self._cursor = (self._cursor + 1) % len(self.pool)
        return connection

    def tick(self) -> asyncio.Task:
        """Dispatch one message. Must be called from within the running loop."""

        message = self.generator.generate()
        connection = self.next_connection()
        task = asyncio.create_task(self._send_and_log(connection, message))
        self._in_flight.add(task)
        task.add_done_callback(self._task_done)
        self.dispatched += 1
        return task

    async def run(self, duration: Optional[float] = None) -> None:
        """Tick until ``stop()`` is called, a signal arrives or ``duration`` elapses."""

        loop = asyncio.get_running_loop()
        installed = _install_signal_handlers(loop, self.stop)
        delay = self.delay_microseconds / 1_000_000

        LOGGER.info(
            "Dispatching %d rps over %d connections to %s (tick every %dus)",
            self.rps,
            len(self.pool),
            self.pool[0].url,
            self.delay_microseconds,
        )

        start = time.monotonic()
        async with self.pool:
            try:
                while not self._stop_event.is_set():
                    if await self._wait_for_stop(delay):
                        break
                    self.tick()

                    if duration is not None and (time.monotonic() - start) >= duration:
                        LOGGER.info("Requested duration %.2fs reached, stopping.", duration)
                        break
            finally:
                await self._drain()
                _remove_signal_handlers(loop, installed)
                elapsed = time.monotonic() - start
                LOGGER.info("Dispatcher stopped after %.2fs, %d requests dispatched", elapsed, self.dispatched)

    async def _wait_for_stop(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _send_and_log(self, connection: Connection, message: bytes) -> None:
        result = await connection.send(message)
        log_send_result(result)

    async def _drain(self) -> None:
        if not self._in_flight:
            return
        LOGGER.debug("Waiting for %d in-flight requests", len(self._in_flight))
        await asyncio.gather(*self._in_flight, return_exceptions=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Send task failed: %r", exc, exc_info=exc)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, callback: Any) -> List[signal.Signals]:
    """Install SIGINT/SIGTERM handlers that stop the dispatcher."""

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / non-main thread
            LOGGER.debug("Signal handlers not supported here")
            break
        installed.append(sig)
    return installed


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop, installed: Iterable[signal.Signals]) -> None:
    for sig in installed:
        loop.remove_signal_handler(sig)


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}") from None
    if number != value and not isinstance(value, str):
        raise ConfigurationError(f"{name} must be a whole number, got {value!r}")
    if number <= 0:
        raise ConfigurationError(f"{name} must be a positive integer")
    return number


@dataclass
class DispatchConfig:
    """Run settings for the generator."""

    target: str
    rps: int
    templates: Any
    connections: int = 1
    headers: Any = field(default_factory=list)
    id_lists: Any = field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    base_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        self.rps = _positive_int("rps", self.rps)
        self.connections = _positive_int("connections", self.connections)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigurationError("timeout_seconds must be positive")
        if self.templates is None:
            raise ConfigurationError("templates are required")

        self.url = parse_target(self.target)
        self.header_map = parse_headers(self.headers)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DispatchConfig":
        """Build a config object from a plain dict."""

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")
        missing = sorted(name for name in ("target", "rps", "templates") if raw.get(name) is None)
        if missing:
            raise ConfigurationError(f"missing configuration keys: {', '.join(missing)}")
        return cls(**raw)

    def resolve(self, path: Any) -> Path:
        path = Path(path)
        if self.base_dir is not None and not path.is_absolute():
            return self.base_dir / path
        return path


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    data = load_document(path)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{path} must contain a mapping")
    return dict(data)


def build_dispatcher(config: DispatchConfig, rng: Optional[random.Random] = None) -> Dispatcher:
    """Load templates and id lists and wire up generator, pool and dispatcher."""

    if isinstance(config.templates, (str, Path)):
        templates = load_template_file(config.resolve(config.templates), rng=rng)
    else:
        templates = TemplateStore.from_source(config.templates, rng=rng)

    if isinstance(config.id_lists, (str, Path)):
        ids = load_id_list_file(config.resolve(config.id_lists), rng=rng)
    else:
        ids = IdPool.from_source(config.id_lists, rng=rng)
        log_pool_sizes(ids)

    generator = MessageGenerator(templates, ids, rng=rng)
    pool = ConnectionPool.build(
        config.url,
        config.header_map,
        config.connections,
        timeout_seconds=config.timeout_seconds,
    )
    return Dispatcher(generator, pool, config.rps)


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def run_with_config(config: DispatchConfig, duration: Optional[float] = None) -> None:
    """Build the dispatcher and run it with asyncio.run."""

    dispatcher = build_dispatcher(config)
    asyncio.run(dispatcher.run(duration=duration))


def _merge_headers(configured: Any, lines: List[str]) -> List[str]:
    if isinstance(configured, Mapping):
        merged = []
        for name, value in configured.items():
            values = value if isinstance(value, list) else [value]
            merged.extend(f"{name}: {item}" for item in values)
    else:
        merged = [str(line) for line in configured or ()]
    return merged + lines


def main(argv: Optional[Iterable[str]] = None) -> None:
    """CLI entry point for the generator."""

    parser = argparse.ArgumentParser(description="Fixed-rate templated JSON POST generator")
    parser.add_argument("--config", type=Path, default=None, help="Path to YAML/JSON config file")
    parser.add_argument("--target", type=str, default=None, help="Target URL (or host:port)")
    parser.add_argument("--rps", type=int, default=None, help="Total requests per second")
    parser.add_argument("--connections", type=int, default=None, help="Number of connections to cycle through")
    parser.add_argument("--headers-file", type=Path, default=None, help="File with one 'Name: Value' header per line")
    parser.add_argument("--templates", type=Path, default=None, help="Template file (JSON/YAML)")
    parser.add_argument("--id-lists", type=Path, default=None, help="Id list file (JSON/YAML)")
    parser.add_argument("--duration", type=float, default=None, help="Optional duration (seconds) to run")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")

    args = parser.parse_args(list(argv) if argv is not None else None)
    setup_logging(args.log_level)

    try:
        config_dict: Dict[str, Any] = {}
        if args.config is not None:
            config_dict = load_config_file(args.config)
            config_dict["base_dir"] = args.config.resolve().parent

        for key in ("target", "rps", "connections"):
            value = getattr(args, key)
            if value is not None:
                config_dict[key] = value
        if args.templates is not None:
            config_dict["templates"] = args.templates.resolve()
        if args.id_lists is not None:
            config_dict["id_lists"] = args.id_lists.resolve()
        if args.headers_file is not None:
            config_dict["headers"] = _merge_headers(config_dict.get("headers"), read_headers_file(args.headers_file))

        config = DispatchConfig.from_dict(config_dict)
        dispatcher = build_dispatcher(config)
    except ConfigurationError as exc:
        parser.error(str(exc))

    asyncio.run(dispatcher.run(duration=args.duration))


if __name__ == "__main__":  # pragma: no cover - CLI usage
    main()

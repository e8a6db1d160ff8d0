"""Convenience runner that posts a steady mix of templated messages to a local endpoint."""

from dispatch_core import DispatchConfig, run_with_config, setup_logging


def main() -> None:
    config = DispatchConfig(
        target="http://127.0.0.1:8080/api/events",
        rps=20,
        connections=4,
        headers=["X-Traffic-Type: steady", "User-Agent: json-traffic/steady"],
        templates=[
            {"probability": 80, "template": {"caller": "#ID#", "region": "#REGION#", "event": "ping"}},
            {"probability": 20, "template": {"caller": "#ID#", "region": "#REGION#", "retries": "##RETRIES##"}},
        ],
        id_lists={
            "REGION": ["us-east", "eu-west", "ap-south"],
            "RETRIES": ["0", "1", "3"],
        },
    )

    setup_logging("INFO")
    # Runs until Ctrl-C / SIGTERM
    run_with_config(config, duration=None)


if __name__ == "__main__":
    main()

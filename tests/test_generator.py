import json
import re

import pytest

from message_core import ConfigurationError, IdPool, MessageGenerator, TemplateStore, load_id_list_file

REGION_MESSAGE = re.compile(r'^\{"id":"CALLER-\d+","region":"(us|eu)"\}$')


def make_generator(template, pools, rng):
    return MessageGenerator(TemplateStore.from_pairs([(1, template)], rng=rng), IdPool(pools, rng=rng), rng=rng)


def test_id_pool_absent_and_empty_names(rng):
    ids = IdPool({"EMPTY": [], "ONE": ["x"]}, rng=rng)
    assert ids.pick_random("EMPTY") is None
    assert ids.pick_random("MISSING") is None
    assert ids.pick_random("ONE") == "x"
    assert ids.sizes() == {"EMPTY": 0, "ONE": 1}


def test_id_pool_picks_uniformly(rng):
    ids = IdPool({"REGION": ["us", "eu", "ap"]}, rng=rng)
    picks = [ids.pick_random("REGION") for _ in range(3000)]
    for value in ("us", "eu", "ap"):
        assert picks.count(value) / len(picks) == pytest.approx(1 / 3, abs=0.04)


def test_id_pool_from_source_coerces_entries_to_text():
    ids = IdPool.from_source({"NUM": [1, 2.5, "three"]})
    assert set(ids.pick_random("NUM") for _ in range(200)) <= {"1", "2.5", "three"}
    assert list(IdPool.from_source(None).names) == []


@pytest.mark.parametrize("source", [["REGION"], {"REGION": "us"}, {"REGION": {"a": 1}}])
def test_id_pool_from_source_rejects_bad_shapes(source):
    with pytest.raises(ConfigurationError):
        IdPool.from_source(source)


def test_load_id_list_file_logs_pool_sizes(tmp_path, caplog):
    path = tmp_path / "ids.json"
    path.write_text(json.dumps({"COUNTRY": ["US", "DE"], "EMPTY": []}))
    caplog.set_level("INFO", logger="json_traffic")

    ids = load_id_list_file(path)

    assert ids.sizes() == {"COUNTRY": 2, "EMPTY": 0}
    assert "id list COUNTRY: 2 entries" in caplog.text
    assert "id list EMPTY: 0 entries" in caplog.text


def test_generated_message_substitutes_id_and_pool_tokens(region_generator):
    for _ in range(200):
        message = region_generator.generate()
        assert isinstance(message, bytes)
        text = message.decode()
        assert REGION_MESSAGE.match(text), text
        assert "#ID#" not in text and "#REGION#" not in text


def test_every_id_occurrence_gets_the_same_caller_id(rng):
    generator = make_generator('{"a":"#ID#","b":"#ID#"}', {}, rng)
    body = json.loads(generator.generate())
    assert body["a"] == body["b"]
    assert body["a"].startswith("CALLER-")


def test_caller_ids_differ_between_messages(rng):
    generator = make_generator('"#ID#"', {}, rng)
    ids = {generator.generate() for _ in range(500)}
    assert len(ids) == 500


def test_quoted_token_is_replaced_by_a_raw_fragment(rng):
    generator = make_generator('{"code": "##COUNTRY##"}', {"COUNTRY": ["US"]}, rng)
    assert generator.generate() == b'{"code": US}'


def test_quoted_form_takes_precedence_over_bare_form(rng):
    generator = make_generator('{"n": "##COUNT##", "label": "#COUNT#"}', {"COUNT": ["7"]}, rng)
    assert json.loads(generator.generate()) == {"n": 7, "label": "7"}


def test_each_occurrence_redraws(rng):
    template = " ".join(["#COLOR#"] * 64)
    generator = make_generator(template, {"COLOR": ["red", "blue"]}, rng)
    values = generator.generate().decode().split()
    assert len(values) == 64
    assert set(values) == {"red", "blue"}


def test_empty_or_unknown_pool_leaves_placeholders(rng):
    generator = make_generator('{"a": "#EMPTY#", "b": "##EMPTY##", "c": "#UNKNOWN#"}', {"EMPTY": []}, rng)
    text = generator.generate().decode()
    assert text == '{"a": "#EMPTY#", "b": "##EMPTY##", "c": "#UNKNOWN#"}'


def test_substituted_text_is_not_rescanned_for_the_same_token(rng):
    generator = make_generator('{"loop": "#LOOP#"}', {"LOOP": ["#LOOP#"]}, rng)
    assert generator.generate() == b'{"loop": "#LOOP#"}'


def test_fallback_message_passes_through(fixed_random, rng):
    store = TemplateStore([], rng=fixed_random(0.5))
    generator = MessageGenerator(store, IdPool({"REGION": ["us"]}, rng=rng), rng=rng)
    assert generator.generate() == b"{}"

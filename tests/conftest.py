import random

import pytest

from message_core import IdPool, MessageGenerator, TemplateStore


class FixedRandom:
    """Stand-in rng that always draws the same value."""

    def __init__(self, value: float):
        self.value = value

    def random(self):
        return self.value


@pytest.fixture
def rng():
    return random.Random(20240611)


@pytest.fixture
def fixed_random():
    return FixedRandom


@pytest.fixture
def region_generator(rng):
    templates = TemplateStore.from_pairs([(1, '{"id":"#ID#","region":"#REGION#"}')], rng=rng)
    ids = IdPool({"REGION": ["us", "eu"]}, rng=rng)
    return MessageGenerator(templates, ids, rng=rng)

import logging

import pytest

from rulesim import ResourceCatalog, new_resource


@pytest.fixture
def iron_ore():
    return new_resource("iron_ore")


@pytest.fixture
def iron():
    return new_resource("iron")


@pytest.fixture
def workers():
    return new_resource("workers")


@pytest.fixture
def catalog(iron_ore, iron, workers):
    return ResourceCatalog([iron_ore, iron, workers])


@pytest.fixture(autouse=True)
def reset_rulesim_logger():
    yield
    # main() installs a console handler bound to the captured stream of the test
    log = logging.getLogger("rulesim")
    for h in list(log.handlers):
        log.removeHandler(h)
    log.setLevel(logging.NOTSET)

import pytest

from pgreen.utils.logging import logger


@pytest.fixture
def package_log(caplog):
    # the package logger does not propagate to the root logger
    logger.addHandler(caplog.handler)
    yield caplog
    logger.removeHandler(caplog.handler)

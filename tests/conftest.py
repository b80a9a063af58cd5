"""Shared test configuration and fixtures."""

import os
from collections.abc import Iterator
from unittest.mock import patch

import pytest

import duration_hedger.core.config as config_module

_HEDGER_ENV_VARS = ("HEDGER_ENV", "HEDGER_BID_SIZE", "HEDGER_MAX_IMBALANCE")


@pytest.fixture(autouse=True)
def _isolate_settings() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    """Keep tests independent of the developer's environment and settings cache.

    ``settings.yaml`` reads several ``${HEDGER_*:default}`` overrides, so a
    value exported in the shell (or loaded from ``.env``) would change the
    configuration under test.  The global ``ConfigLoader`` singleton is
    reset around every test for the same reason.
    """
    cleaned = {k: v for k, v in os.environ.items() if k not in _HEDGER_ENV_VARS}
    config_module._config = None
    with patch.dict(os.environ, cleaned, clear=True):
        yield
    config_module._config = None

import pytest
from helpers import ECHO_SERVER, python_config

from mcp_bridge.config import BridgeSettings, OpenConfig


@pytest.fixture
def settings() -> BridgeSettings:
    return BridgeSettings(ping_interval=0, _env_file=None)


@pytest.fixture
def echo_config() -> OpenConfig:
    return python_config(ECHO_SERVER)

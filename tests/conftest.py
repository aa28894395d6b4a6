from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from tests.fakes import BridgeEnv, make_env


@pytest.fixture
async def env(tmp_path: Path) -> AsyncIterator[BridgeEnv]:
    bridge_env = make_env(tmp_path)
    yield bridge_env
    await bridge_env.bridge.stop()

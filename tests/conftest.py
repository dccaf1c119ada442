import os

import pytest

from apps.api.config import GatewayConfig
from tests.fakes import FakeSandbox


@pytest.fixture(autouse=True)
def _isolate_clawbox_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep a developer's exported gateway settings out of the tests.
    for key in list(os.environ):
        if key.startswith("CLAWBOX_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def cfg() -> GatewayConfig:
    return GatewayConfig(teardown_pause_s=0.0)


@pytest.fixture
def sandbox(cfg: GatewayConfig) -> FakeSandbox:
    return FakeSandbox(launcher_cmd=cfg.launcher_cmd)

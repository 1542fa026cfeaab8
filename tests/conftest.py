"""Shared pytest fixtures for wabridge tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_webhook_pipeline():
    """Reset the module-level webhook pipeline between tests.

    The route lazily builds and keeps a pipeline; a fake injected by one test
    must not leak into the next.
    """
    import wabridge.api.routes.webhooks_whatsapp as webhook_module

    webhook_module._set_pipeline(None)
    yield
    webhook_module._set_pipeline(None)


@pytest.fixture
def media_root(tmp_path, monkeypatch):
    """Point MEDIA_ROOT at a temporary directory."""
    root = tmp_path / "uploads"
    monkeypatch.setenv("MEDIA_ROOT", str(root))
    return root

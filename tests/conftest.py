import pytest
from types import SimpleNamespace
from unittest.mock import patch

from gcpublish.config import GcPublishConfig


@pytest.fixture
def test_config(tmp_path):
    return GcPublishConfig(
        subscription_id="00000000-0000-0000-0000-000000000001",
        storage_account="teststorage",
        resource_group="rg-test",
        output_root=str(tmp_path / "out"),
        module_roots=[str(tmp_path / "modules")],
        logging={"output": str(tmp_path / "logs" / "gcpublish.log")},
    )


@pytest.fixture(autouse=True)
def mock_load_config(request, test_config):
    # Don't patch for config tests
    if "test_config" in request.module.__name__ or "test_cli_config" in request.module.__name__:
        yield
        return

    with patch("gcpublish.config.load_config", return_value=test_config):
        yield


@pytest.fixture
def fake_run():
    """Records commands and returns queued results (default: success, no output)."""

    class FakeRun:
        def __init__(self):
            self.calls = []
            self.results = []

        def queue(self, *results):
            self.results.extend(results)

        def __call__(self, command, **kwargs):
            self.calls.append(command)
            if self.results:
                result = self.results.pop(0)
                if isinstance(result, BaseException):
                    raise result
                return result
            return SimpleNamespace(returncode=0, stdout="", stderr="")

        @property
        def scripts(self):
            return [c[-1] for c in self.calls]

    return FakeRun()

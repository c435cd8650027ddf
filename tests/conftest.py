import pytest


@pytest.fixture(autouse=True)
def rigger_home(tmp_path, monkeypatch):
    """Keep the event log of every test in its own directory."""
    home = tmp_path / "rigger-home"
    monkeypatch.setenv("RIGGER_HOME", str(home))
    monkeypatch.delenv("RIGGER_CONFIG", raising=False)
    return home

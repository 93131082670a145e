import pytest

from config import get_settings
from errors import ConfigurationError


@pytest.fixture()
def fresh_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("FINANCE_DATA_DIR", str(tmp_path))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults_live_under_the_data_dir(fresh_settings, tmp_path) -> None:
    settings = get_settings()

    assert settings.database_url == f"sqlite:///{tmp_path.resolve() / 'finance.db'}"
    assert settings.storage_dir == tmp_path.resolve() / "storage"
    assert settings.session_max_age_hours == 24
    assert settings.public_base_url == "/storage"


@pytest.mark.parametrize(
    "name,value",
    [
        ("FINANCE_DATABASE_URL", " "),
        ("FINANCE_SECRET_KEY", ""),
        ("FINANCE_SESSION_MAX_AGE_HOURS", "a day"),
    ],
)
def test_bad_settings_are_fatal(fresh_settings, monkeypatch, name, value) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        get_settings()

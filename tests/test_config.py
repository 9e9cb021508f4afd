import pytest

from chatrelay import server
from chatrelay.config import (
    CompletionBackend,
    ConfigurationError,
    Settings,
    get_settings,
)
from chatrelay.service.runtime import Runtime, _mask_url_password

_MANAGED_ENV = [
    "MONGO_URI",
    "DB_HOST",
    "DB_USER",
    "DB_PASSWORD",
    "DB_NAME",
    "DB_PORT",
    "JWT_SECRET",
    "OPENAI_API_KEY",
    "COMPLETION_BACKEND",
    "USE_MEMORY_STORE",
    "CHAT_HISTORY_LIMIT",
    "CORS_ALLOW_ORIGINS",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in _MANAGED_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _full_env(monkeypatch):
    values = {
        "MONGO_URI": "mongodb://localhost:27017",
        "DB_HOST": "localhost",
        "DB_USER": "chat",
        "DB_PASSWORD": "pw",
        "DB_NAME": "chat",
        "JWT_SECRET": "secret",
        "OPENAI_API_KEY": "sk-test",
    }
    for name, value in values.items():
        monkeypatch.setenv(name, value)


def test_all_required_present(clean_env):
    _full_env(clean_env)

    settings = Settings.from_env()

    assert settings.missing_required() == []
    settings.ensure_complete()
    assert settings.db_port == 5432
    assert settings.completion_backend == CompletionBackend.OPENAI


@pytest.mark.parametrize(
    "dropped", ["MONGO_URI", "DB_HOST", "DB_USER", "DB_PASSWORD", "DB_NAME", "JWT_SECRET", "OPENAI_API_KEY"]
)
def test_each_required_item_is_reported(clean_env, dropped):
    _full_env(clean_env)
    clean_env.delenv(dropped)

    settings = Settings.from_env()

    assert settings.missing_required() == [dropped]
    with pytest.raises(ConfigurationError) as excinfo:
        settings.ensure_complete()
    assert excinfo.value.missing == [dropped]


def test_memory_and_stub_only_need_jwt_secret(clean_env):
    clean_env.setenv("USE_MEMORY_STORE", "true")
    clean_env.setenv("COMPLETION_BACKEND", "stub")

    assert Settings.from_env().missing_required() == ["JWT_SECRET"]


def test_dotenv_file_is_fallback(clean_env, tmp_path):
    (tmp_path / ".env").write_text("JWT_SECRET=from-file\nDB_PORT=6543\n")
    clean_env.setenv("DB_PORT", "7000")

    settings = Settings.from_env()

    assert settings.jwt_secret == "from-file"
    assert settings.db_port == 7000


def test_history_limit_parsing(clean_env):
    clean_env.setenv("CHAT_HISTORY_LIMIT", "")
    assert Settings.from_env().chat_history_limit is None

    clean_env.setenv("CHAT_HISTORY_LIMIT", "20")
    assert Settings.from_env().chat_history_limit == 20

    clean_env.setenv("CHAT_HISTORY_LIMIT", "0")
    with pytest.raises(ValueError):
        Settings.from_env()


def test_cors_origins_split(clean_env):
    clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

    assert Settings.from_env().cors_allow_origins == ["https://a.example", "https://b.example"]


def test_mirror_conninfo():
    settings = Settings(db_host="db", db_user="chat", db_password="pw", db_name="users", db_port=5433)

    conninfo = settings.mirror_conninfo()

    for part in ("host=db", "port=5433", "user=chat", "password=pw", "dbname=users"):
        assert part in conninfo


def test_get_settings_is_cached(clean_env):
    clean_env.setenv("JWT_SECRET", "one")
    first = get_settings()
    clean_env.setenv("JWT_SECRET", "two")

    assert get_settings() is first


def test_runtime_refuses_incomplete_settings():
    with pytest.raises(ConfigurationError):
        Runtime(Settings(use_memory_store=True, completion_backend=CompletionBackend.STUB))


def test_server_exits_nonzero_when_config_missing(clean_env):
    assert server.main([]) == 1


def test_server_starts_uvicorn_when_configured(clean_env):
    clean_env.setenv("JWT_SECRET", "secret")
    clean_env.setenv("USE_MEMORY_STORE", "true")
    clean_env.setenv("COMPLETION_BACKEND", "stub")
    calls = []
    clean_env.setattr(server.uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))

    assert server.main(["--port", "9090"]) == 0

    args, kwargs = calls[0]
    assert args == ("chatrelay.app:create_app",)
    assert kwargs["factory"] is True
    assert kwargs["port"] == 9090


def test_mask_url_password():
    assert (
        _mask_url_password("mongodb://app:secret@db:27017/chat")
        == "mongodb://app:***@db:27017/chat"
    )
    assert _mask_url_password("mongodb://db:27017") == "mongodb://db:27017"
    assert _mask_url_password(None) is None

from utils.config import AppConfig


def test_allowed_origins_come_from_the_environment(monkeypatch):
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://cards.example.com, https://tavern.example.com")
    monkeypatch.setenv("FRONTEND_URL", "https://cards.example.com")

    config = AppConfig.from_env()

    assert config.allowed_origins == ("https://cards.example.com", "https://tavern.example.com")
    assert config.cors_origins() == ["https://cards.example.com", "https://tavern.example.com"]


def test_default_origins_include_frontend_url(monkeypatch):
    monkeypatch.delenv("ALLOWED_ORIGINS", raising=False)
    monkeypatch.setenv("FRONTEND_URL", "http://localhost:5173")

    assert AppConfig.from_env().cors_origins() == [
        "http://localhost:2427",
        "http://127.0.0.1:2427",
        "http://localhost:5173",
    ]


def test_aggregator_markers_are_comma_separated(monkeypatch):
    monkeypatch.setenv("AGGREGATOR_MARKERS", "openrouter.ai, , gateway.example.net")
    assert AppConfig.from_env().aggregator_markers == ("openrouter.ai", "gateway.example.net")

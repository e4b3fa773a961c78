import uvicorn

from huddle.__main__ import main


def test_main_serves_app_with_env_host_and_port(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.delenv("LOG_LEVEL", raising=False)

    main()

    assert calls == [("huddle.main:app", {"host": "127.0.0.1", "port": 9100, "log_level": "info"})]


def test_main_defaults(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    for name in ("HOST", "PORT", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    main()

    assert calls[0][1]["host"] == "0.0.0.0"
    assert calls[0][1]["port"] == 8000

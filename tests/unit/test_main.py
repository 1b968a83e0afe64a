"""Console entry point."""

from partysnap import main
from partysnap.config import Settings


def test_run_serves_the_app_with_configured_bind(monkeypatch):
    calls = []
    monkeypatch.setattr(main, "get_settings", lambda: Settings(host="127.0.0.1", port=9001))
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main.run()

    assert calls == [("partysnap.main:app", {"host": "127.0.0.1", "port": 9001, "reload": False})]

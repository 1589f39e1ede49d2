import os

import pytest
from cryptography.fernet import Fernet


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith(("TAUTULLI_", "CLOUDINARY_")):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NEWZLETTR_CONFIG", str(tmp_path / "config" / "config.json"))
    monkeypatch.setenv("CLOUDINARY_MAP_PATH", str(tmp_path / "config" / "cloudinary_urls.json"))
    monkeypatch.setenv("DATA_ENC_KEY", Fernet.generate_key().decode())
    return tmp_path


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text="", reason="OK",
                 url="http://tautulli.local:8181/api/v2"):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text
        self.reason = reason
        self.url = url

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def envelope(data, result="success", message=None):
    return {"response": {"result": result, "message": message, "data": data}}


@pytest.fixture
def fake_session(monkeypatch):
    import tautulli

    sessions = []

    def install(*responses):
        session = FakeSession(responses)
        sessions.append(session)
        monkeypatch.setattr(tautulli, "build_session", lambda cfg: session)
        return session

    return install

"""Test configuration for the Lightning Tip Jar."""

import os
from pathlib import Path
from types import SimpleNamespace

# before config is imported anywhere
os.environ["APP_ENV"] = "development"
os.environ["USE_REAL_LNBITS"] = "false"
os.environ["MOCK_RANDOM_SETTLEMENT"] = "false"
os.environ["ENV_FILE"] = str(Path(__file__).parent / ".env.missing")

import pytest
import requests
from apscheduler.jobstores.base import JobLookupError

import app as app_module
import lightning
from lightning import MockLightningBackend
from mode import ModeSettings


@pytest.fixture
def mock_backend(monkeypatch):
    backend = MockLightningBackend(random_settlement=False)
    monkeypatch.setattr(lightning, "_backend_instances", {"mock": backend})
    return backend


@pytest.fixture
def mode(monkeypatch, tmp_path):
    settings = ModeSettings(
        app_env="development",
        use_real_backend=False,
        env_file=str(tmp_path / ".env.local"),
    )
    monkeypatch.setattr(app_module, "mode_settings", settings)
    return settings


@pytest.fixture
def client(mock_backend, mode):
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


class FakeScheduler:
    """Records APScheduler jobs so tests can fire them by hand."""

    def __init__(self):
        self.jobs = {}

    def add_job(self, func, trigger, id=None, replace_existing=False, **kwargs):
        self.jobs[id] = SimpleNamespace(func=func, trigger=trigger, kwargs=kwargs)

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def jobs_with_trigger(self, trigger):
        return [job for job in self.jobs.values() if job.trigger == trigger]

    def fire(self, trigger):
        for job in self.jobs_with_trigger(trigger):
            job.func()


@pytest.fixture
def scheduler():
    return FakeScheduler()


class _Response:
    """The parts of requests.Response the tip jar client reads."""

    def __init__(self, resp):
        self.status_code = resp.status_code
        self.ok = resp.status_code < 400
        self.text = resp.get_data(as_text=True)
        self._data = resp.get_json(silent=True)

    def json(self):
        if self._data is None:
            raise ValueError("No JSON body")
        return self._data

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FlaskSession:
    """requests.Session stand-in that routes calls into the Flask test client."""

    def __init__(self, test_client):
        self.test_client = test_client
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append(("POST", url, json))
        return _Response(self.test_client.post(_path(url), json=json))

    def get(self, url, params=None, timeout=None):
        self.calls.append(("GET", url, params))
        return _Response(self.test_client.get(_path(url), query_string=params or {}))


def _path(url):
    return "/" + url.split("/", 3)[3]


@pytest.fixture
def flask_session(client):
    return FlaskSession(client)

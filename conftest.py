import json

import pytest
import requests
from diskcache import Cache

from unitpay import PaymentIntentRepository, TaskRepository


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def show_spinner(self, text):
        self.events.append(("spinner", text))

    def hide_spinner(self):
        self.events.append(("hide", None))

    def show_error(self, text):
        self.events.append(("error", text))

    def show_success(self, text):
        self.events.append(("success", text))

    def of(self, kind):
        return [text for k, text in self.events if k == kind]


def make_response(status, body=None, text=None):
    res = requests.Response()
    res.status_code = status
    if body is not None:
        res._content = json.dumps(body).encode("utf-8")
        res.headers["Content-Type"] = "application/json"
    else:
        res._content = (text or "").encode("utf-8")
    return res


@pytest.fixture
def cache(tmp_path):
    c = Cache(str(tmp_path / "cache"))
    yield c
    c.close()


@pytest.fixture
def intents(cache):
    return PaymentIntentRepository(cache)


@pytest.fixture
def tasks(cache):
    return TaskRepository(cache)


@pytest.fixture
def notifier():
    return RecordingNotifier()

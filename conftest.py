"""
Shared pytest fixtures: a scripted stand-in for requests.Session and helpers
to build real requests.Response objects.
"""
import json

import pytest
import requests

import profile_manager_core


def make_response(status_code=200, payload=None, headers=None):
    """Build a requests.Response carrying a JSON body"""
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(payload if payload is not None else {}).encode('utf-8')
    response.encoding = 'utf-8'
    response.headers.update(headers or {})
    response.url = 'https://dfareporting.test'
    return response


class FakeSession:
    """Records every request; answers from a handler or a queue of responses"""

    def __init__(self, responses=None, handler=None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, params=None, json=None):
        self.calls.append({
            'method': method,
            'url': url,
            'headers': headers,
            'timeout': timeout,
            'params': dict(params) if params else None,
            'json': json,
        })
        if self.handler is not None:
            result = self.handler(method, url, params, json)
        else:
            result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def sleeps(monkeypatch):
    """Replace time.sleep with a recorder so retries and rate limiting are instant"""
    recorded = []
    monkeypatch.setattr(profile_manager_core.time, 'sleep', recorded.append)
    return recorded


@pytest.fixture
def make_api(sleeps):
    def factory(responses=None, handler=None, **kwargs):
        session = FakeSession(responses=responses, handler=handler)
        api = profile_manager_core.CampaignManagerAPI('test-token', session=session, **kwargs)
        return api, session
    return factory

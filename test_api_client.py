"""
Tests for the Campaign Manager API client retry and error handling
"""
import pytest
import requests

from conftest import make_response
from profile_manager_core import (
    ACCOUNTS,
    AuthenticationError,
    CampaignManagerAPI,
    RateLimiter,
)


def test_missing_token_rejected():
    with pytest.raises(AuthenticationError):
        CampaignManagerAPI('   ')


def test_bearer_header_and_timeout(make_api):
    api, session = make_api(responses=[make_response(payload={'accounts': []})], timeout=12)

    api.list_page(ACCOUNTS, '555')

    call = session.calls[0]
    assert call['headers']['Authorization'] == 'Bearer test-token'
    assert call['headers']['Accept'] == 'application/json'
    assert call['timeout'] == 12


def test_rate_limited_request_waits_and_retries(make_api, sleeps):
    api, session = make_api(responses=[
        make_response(429, {'error': 'quota'}, headers={'Retry-After': '7'}),
        make_response(payload={'accounts': [{'id': '1'}], 'nextPageToken': 'n'}),
    ])

    page = api.list_page(ACCOUNTS, '555', {'searchString': 'a'})

    assert page.items == [{'id': '1'}]
    assert page.next_page_token == 'n'
    assert len(session.calls) == 2
    assert 7.0 in sleeps


def test_server_errors_exhaust_retries(make_api):
    api, session = make_api(responses=[make_response(503)] * 3)

    with pytest.raises(requests.exceptions.HTTPError):
        api.list_page(ACCOUNTS, '555')
    assert len(session.calls) == 3


def test_connection_error_retried(make_api):
    api, session = make_api(responses=[
        requests.exceptions.ConnectionError('reset'),
        make_response(payload={'accounts': []}),
    ])

    assert api.list_page(ACCOUNTS, '555').items == []
    assert len(session.calls) == 2


def test_connection_error_on_last_attempt_raises(make_api):
    api, _ = make_api(responses=[requests.exceptions.Timeout('slow')] * 2, max_retries=2)

    with pytest.raises(requests.exceptions.Timeout):
        api.list_page(ACCOUNTS, '555')


def test_unauthorized_raises_authentication_error(make_api):
    api, session = make_api(responses=[make_response(401, {'error': 'invalid_token'})])

    with pytest.raises(AuthenticationError):
        api.list_page(ACCOUNTS, '555')
    assert len(session.calls) == 1


def test_client_error_not_retried(make_api):
    api, session = make_api(responses=[make_response(404, {'error': 'not found'})])

    with pytest.raises(requests.exceptions.HTTPError):
        api.list_page(ACCOUNTS, '555')
    assert len(session.calls) == 1


def test_pagination_fault_aborts_list_all(make_api):
    api, _ = make_api(responses=[
        make_response(payload={'accounts': [{'id': '1'}], 'nextPageToken': 'p2'}),
        make_response(404, {'error': 'gone'}),
    ])

    with pytest.raises(requests.exceptions.HTTPError):
        api.list_all(ACCOUNTS, '555')


def test_verify_connection_reports_failure(make_api):
    api, _ = make_api(responses=[make_response(401, {'error': 'expired'})])

    result = api.verify_connection()

    assert result['success'] is False
    assert 'expired' in result['error']


def test_verify_connection_samples_profiles(make_api):
    api, _ = make_api(responses=[make_response(payload={'items': [
        {'profileId': str(n), 'userName': f'user{n}', 'accountId': '1'} for n in range(8)
    ]})])

    result = api.verify_connection(sample_size=3)

    assert result['success'] is True
    assert result['profile_count'] == 8
    assert [p['id'] for p in result['sample']] == ['0', '1', '2']


def test_rate_limiter_sleeps_once_burst_is_spent(sleeps):
    limiter = RateLimiter(max_per_second=10, burst_size=2)

    for _ in range(3):
        limiter.wait_if_needed()

    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 0.1


def test_rate_limited_on_every_attempt_raises(make_api, sleeps):
    api, session = make_api(responses=[
        make_response(429, {'error': 'quota'}, headers={'Retry-After': '1'})
    ] * 3)

    with pytest.raises(requests.exceptions.HTTPError) as excinfo:
        api.list_page(ACCOUNTS, '555')
    assert excinfo.value.response.status_code == 429
    assert len(session.calls) == 3

"""Tests for client.py: token exchange, error parsing and classification, retries."""
from unittest.mock import MagicMock

import httpx
import pytest

from cloud_auth.client import TokenExchangeClient, parse_token_response, validate_url
from cloud_auth.models.tokens import TOKEN_TYPE_JWT, TokenExchangeRequest
from cloud_auth.utils.errors import (
    ConfigurationError,
    InvalidResponseError,
    OAuthError,
    RetryClassification,
    RetryExhaustedError,
    TransportError,
)

STS_URL = "https://sts.googleapis.com/v1/token"


def _resp(status_code=200, json_data=None, text=""):
    """Build a fake httpx.Response."""
    r = MagicMock(spec=httpx.Response)
    r.status_code = status_code
    r.text = text
    if isinstance(json_data, Exception):
        r.json.side_effect = json_data
    else:
        r.json.return_value = json_data if json_data is not None else {}
    return r


def _token(access_token="sts-token", expires_in=3600, **extra):
    body = {"access_token": access_token, "token_type": "Bearer", "expires_in": expires_in}
    body.update(extra)
    return _resp(200, body)


def _error(status_code, error="invalid_grant", description="bad grant"):
    return _resp(status_code, {"error": error, "error_description": description})


def _request():
    return TokenExchangeRequest(
        subject_token="subject",
        subject_token_type=TOKEN_TYPE_JWT,
        audience="//iam.googleapis.com/projects/1/locations/global/workloadIdentityPools/p/providers/q",
        scopes=["scope-a", "scope-b"],
    )


# ── Token exchange ───────────────────────────────────────────────────

def test_exchange_token_posts_form(client):
    client._http.request.return_value = _token()
    response = client.exchange_token(STS_URL, _request())

    assert response.access_token == "sts-token"
    args, kwargs = client._http.request.call_args
    assert args == ("POST", STS_URL)
    form = kwargs["data"]
    assert form["grant_type"] == "urn:ietf:params:oauth:grant-type:token-exchange"
    assert form["subject_token"] == "subject"
    assert form["subject_token_type"] == TOKEN_TYPE_JWT
    assert form["requested_token_type"] == "urn:ietf:params:oauth:token-type:access_token"
    assert form["scope"] == "scope-a scope-b"
    assert form["audience"].startswith("//iam.googleapis.com/")
    assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"


def test_exchange_token_passes_options_and_headers(client):
    client._http.request.return_value = _token()
    client.exchange_token(STS_URL, _request(), options='{"userProject": "p"}', headers={"Authorization": "Basic x"})

    kwargs = client._http.request.call_args[1]
    assert kwargs["data"]["options"] == '{"userProject": "p"}'
    assert kwargs["headers"]["Authorization"] == "Basic x"


def test_exchange_token_uses_rpc_timeout(client):
    client._http.request.return_value = _token()
    client.exchange_token(STS_URL, _request())
    assert client._http.request.call_args[1]["timeout"] == 5.0


def test_exchange_token_requires_expires_in(client):
    client._http.request.return_value = _resp(200, {"access_token": "tok"})
    with pytest.raises(InvalidResponseError, match="expires_in"):
        client.exchange_token(STS_URL, _request())


def test_exchange_token_optional_expires_in(client):
    client._http.request.return_value = _resp(200, {"access_token": "tok"})
    response = client.exchange_token(STS_URL, _request(), expires_in_required=False)
    assert response.expires_in is None


def test_exchange_token_keeps_optional_fields(client):
    client._http.request.return_value = _token(
        issued_token_type="urn:ietf:params:oauth:token-type:access_token",
        refresh_token="rt",
        scope="a b",
    )
    response = client.exchange_token(STS_URL, _request())
    assert response.refresh_token == "rt"
    assert response.scopes == ("a", "b")


def test_missing_access_token_is_invalid(client):
    client._http.request.return_value = _resp(200, {"expires_in": 10})
    with pytest.raises(InvalidResponseError):
        client.exchange_token(STS_URL, _request())


def test_non_json_body_is_invalid(client):
    client._http.request.return_value = _resp(200, ValueError("no json"))
    with pytest.raises(InvalidResponseError):
        client.request_json("GET", "https://example.com/token")


def test_non_object_body_is_invalid(client):
    client._http.request.return_value = _resp(200, ["a", "b"])
    with pytest.raises(InvalidResponseError):
        client.request_json("GET", "https://example.com/token")


def test_parse_token_response_negative_expires_in():
    with pytest.raises(InvalidResponseError):
        parse_token_response({"access_token": "tok", "expires_in": -1})


# ── Error parsing ────────────────────────────────────────────────────

def test_oauth_error_fields(client):
    client._http.request.return_value = _resp(
        400,
        {"error": "invalid_request", "error_description": "Invalid subject token", "error_uri": "https://e.x"},
    )
    with pytest.raises(OAuthError) as exc:
        client.exchange_token(STS_URL, _request())

    err = exc.value
    assert err.error_code == "invalid_request"
    assert err.error_description == "Invalid subject token"
    assert err.error_uri == "https://e.x"
    assert err.status_code == 400
    assert str(err) == "Error code invalid_request: Invalid subject token - https://e.x"


def test_nested_error_shape(client):
    client._http.request.return_value = _resp(
        403, {"error": {"code": 403, "status": "PERMISSION_DENIED", "message": "denied"}}
    )
    with pytest.raises(OAuthError) as exc:
        client.request_json("POST", "https://iam.example.com", json={})
    assert exc.value.error_code == "PERMISSION_DENIED"
    assert exc.value.error_description == "denied"


def test_plain_text_error(client):
    client._http.request.return_value = _resp(404, ValueError("not json"), text="Not Found")
    with pytest.raises(OAuthError) as exc:
        client.request_json("GET", "https://example.com")
    assert exc.value.error_code == "http_404"
    assert exc.value.error_description == "Not Found"


# ── Classification and retries ───────────────────────────────────────

def test_400_not_retried(client):
    client._http.request.return_value = _error(400)
    with pytest.raises(OAuthError) as exc:
        client.exchange_token(STS_URL, _request())

    assert exc.value.classification == RetryClassification.NON_RETRYABLE
    assert not exc.value.retryable
    assert client._http.request.call_count == 1
    client._sleep.assert_not_called()


@pytest.mark.parametrize("status", [401, 403, 404, 408, 429, 502])
def test_other_statuses_not_retried(client, status):
    client._http.request.return_value = _error(status)
    with pytest.raises(OAuthError):
        client.exchange_token(STS_URL, _request())
    assert client._http.request.call_count == 1


@pytest.mark.parametrize("status", [500, 503])
def test_transient_status_retried_then_succeeds(client, status):
    client._http.request.side_effect = [_error(status), _error(status), _token("after-retry")]
    response = client.exchange_token(STS_URL, _request())

    assert response.access_token == "after-retry"
    assert client._http.request.call_count == 3
    assert client._sleep.call_count == 2


def test_retry_exhausted_after_max_attempts(client):
    client._http.request.return_value = _error(503, "server_error", "unavailable")
    with pytest.raises(RetryExhaustedError) as exc:
        client.exchange_token(STS_URL, _request())

    err = exc.value
    assert err.attempts == 4
    assert err.retryable
    assert isinstance(err.last_error, OAuthError)
    assert err.last_error.classification == RetryClassification.RETRIED
    assert err.__cause__ is err.last_error
    assert client._http.request.call_count == 4


def test_first_failure_classified_retryable(client):
    client._http.request.side_effect = [_error(503), _error(400)]
    with pytest.raises(OAuthError) as exc:
        client.exchange_token(STS_URL, _request())
    # The second response is a 400 after one retry
    assert exc.value.retry_count == 1
    assert exc.value.classification == RetryClassification.NON_RETRYABLE


def test_sleeps_for_randomized_delay(client):
    client._retry._rng = MagicMock()
    client._retry._rng.uniform.side_effect = lambda low, high: high
    client._http.request.side_effect = [_error(500), _error(500), _token()]
    client.exchange_token(STS_URL, _request())

    waits = [c.args[0] for c in client._sleep.call_args_list]
    assert waits == [0.01, 0.02]


def test_transport_error_retried(client):
    client._http.request.side_effect = [httpx.ConnectError("refused"), _token("ok")]
    response = client.exchange_token(STS_URL, _request())
    assert response.access_token == "ok"


def test_transport_error_exhausts(client):
    client._http.request.side_effect = httpx.ReadTimeout("timed out")
    with pytest.raises(RetryExhaustedError) as exc:
        client.exchange_token(STS_URL, _request())
    assert isinstance(exc.value.last_error, TransportError)
    assert "ReadTimeout" in str(exc.value)


def test_total_timeout_stops_retries(fast_retry, clock):
    settings = fast_retry.model_copy(update={"max_attempts": 0})
    http = MagicMock()

    def slow_failure(*args, **kwargs):
        clock.advance(31)
        return _error(503)

    http.request.side_effect = slow_failure
    c = TokenExchangeClient(settings, http=http, clock=clock, sleep=MagicMock())
    with pytest.raises(RetryExhaustedError):
        c.exchange_token(STS_URL, _request())
    # 31s per attempt in a 60s budget
    assert http.request.call_count == 2


def test_request_token_posts_grant(client):
    client._http.request.return_value = _token("user-token")
    response = client.request_token("https://oauth2.googleapis.com/token", {"grant_type": "refresh_token"})
    assert response.access_token == "user-token"
    assert client._http.request.call_args[1]["data"] == {"grant_type": "refresh_token"}


def test_close(client):
    client.close()
    client._http.close.assert_called_once()


# ── Configuration failures ───────────────────────────────────────────

@pytest.mark.parametrize("error", [
    httpx.UnsupportedProtocol("Request URL has an unsupported protocol 'ftp://'"),
    httpx.InvalidURL("Invalid URL"),
    httpx.LocalProtocolError("Illegal header value"),
])
def test_configuration_failures_not_retried(client, error):
    client._http.request.side_effect = error
    with pytest.raises(ConfigurationError) as exc:
        client.exchange_token("ftp://sts.example.com/v1/token", _request())

    assert not exc.value.retryable
    assert exc.value.__cause__ is error
    assert client._http.request.call_count == 1
    client._sleep.assert_not_called()


@pytest.mark.parametrize("url", ["https://sts.googleapis.com/v1/token", "http://169.254.169.254/token"])
def test_validate_url_accepts_http_urls(url):
    assert validate_url(url) == url


@pytest.mark.parametrize("url", ["ftp://sts.example.com", "/v1/token", "", "https://"])
def test_validate_url_rejects(url):
    with pytest.raises(ConfigurationError, match="token_url"):
        validate_url(url, "token_url")

from __future__ import annotations

import httpx

from docpipe.services.webhooks.delivery import classify_outcome


def test_success_statuses_are_delivered() -> None:
    for status_code in (200, 201, 204):
        outcome = classify_outcome(status_code=status_code)
        assert outcome.delivered
        assert outcome.error is None


def test_client_errors_are_terminal() -> None:
    for status_code in (400, 401, 404, 408, 410, 429):
        outcome = classify_outcome(status_code=status_code)
        assert not outcome.delivered
        assert not outcome.retryable
        assert outcome.error == f"http_{status_code}"


def test_server_errors_are_retryable() -> None:
    for status_code in (500, 502, 503, 504):
        outcome = classify_outcome(status_code=status_code)
        assert outcome.retryable
        assert outcome.http_status == status_code


def test_timeouts_and_network_errors_are_retryable() -> None:
    timeout = classify_outcome(exc=httpx.ReadTimeout("slow"))
    assert timeout.retryable
    assert timeout.error == "timeout"

    refused = classify_outcome(exc=httpx.ConnectError("refused"))
    assert refused.retryable
    assert refused.error == "network_error: ConnectError"


def test_redirects_are_not_followed_or_retried() -> None:
    outcome = classify_outcome(status_code=302)
    assert not outcome.delivered
    assert not outcome.retryable

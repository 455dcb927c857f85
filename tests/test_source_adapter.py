"""Tests for the review source client."""

from unittest.mock import MagicMock

import pytest
import requests

from review_pipeline.errors import PermanentSourceError, TransientSourceError
from review_pipeline.source_adapter import (
    TOKEN_HEADER, ReviewSourceClient, normalize_source_review, split_page,
)


def _make_response(status=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def _make_client(responses=None, **source_cfg):
    client = ReviewSourceClient({"source": dict({"page_delay": 0, "token": "tkn"}, **source_cfg)})
    session = MagicMock()
    if isinstance(responses, Exception):
        session.post.side_effect = responses
    else:
        session.post.side_effect = list(responses or [])
    client._local.session = session
    return client, session


def _raw(rid, rating=5):
    return {"review_id": rid, "rating": rating, "snippet": f"text {rid}",
            "user": {"name": f"user {rid}"}}


class TestSplitPage:
    def test_list_with_trailing_token(self):
        reviews, token = split_page([_raw("a"), _raw("b"), "NEXT"])
        assert [r["review_id"] for r in reviews] == ["a", "b"]
        assert token == "NEXT"

    def test_list_without_token(self):
        reviews, token = split_page([_raw("a")])
        assert len(reviews) == 1
        assert token is None

    def test_dict_wrapper(self):
        reviews, token = split_page({"reviews": [_raw("a")], "next_page_token": "t2"})
        assert len(reviews) == 1
        assert token == "t2"

    def test_unknown_shape(self):
        assert split_page("garbage") == ([], None)
        assert split_page({"error": "x"}) == ([], None)


class TestNormalize:
    def test_field_mapping(self):
        record = normalize_source_review({
            "review_id": "r1", "rating": 4, "snippet": "Nice",
            "user": {"name": "Jane"}, "timestamp": 1_700_000_000,
            "owner_response": {"text": "Thanks"},
        })
        assert record["review_id"] == "r1"
        assert record["author_name"] == "Jane"
        assert record["rating"] == 4
        assert record["text"] == "Nice"
        assert record["reply_text"] == "Thanks"
        assert record["published_at"].startswith("2023-11-14")
        assert record["verified"] is True

    def test_millisecond_timestamp(self):
        record = normalize_source_review({"rating": 5, "timestamp": 1_700_000_000_000})
        assert record["published_at"].startswith("2023-11-14")

    def test_missing_author_is_anonymous(self):
        record = normalize_source_review({"rating": 5})
        assert record["author_name"] == "Anonymous"
        assert record["text"] == ""
        assert record["review_id"] is None


class TestFetch:
    def test_paginates_until_no_token(self):
        client, session = _make_client([
            _make_response(payload=[_raw("a"), _raw("b"), "T1"]),
            _make_response(payload=[_raw("c")]),
        ])
        reviews = client.fetch("place-1", max_records=100)
        assert [r["review_id"] for r in reviews] == ["a", "b", "c"]
        assert session.post.call_count == 2
        second_body = session.post.call_args_list[1].kwargs["json"]
        assert second_body["token"] == "T1"
        assert second_body["data_id"] == "place-1"

    def test_stops_at_max_records(self):
        client, session = _make_client([
            _make_response(payload=[_raw("a"), _raw("b"), "T1"]),
            _make_response(payload=[_raw("c")]),
        ])
        assert len(client.fetch("place-1", max_records=2)) == 2
        assert session.post.call_count == 1

    def test_stops_at_max_pages(self):
        client, session = _make_client([
            _make_response(payload=[_raw("a"), "T1"]),
            _make_response(payload=[_raw("b"), "T2"]),
        ], max_pages=1)
        assert len(client.fetch("place-1")) == 1
        assert session.post.call_count == 1

    def test_missing_place_id_is_permanent(self):
        client, _ = _make_client()
        with pytest.raises(PermanentSourceError):
            client.fetch("")

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_statuses(self, status):
        client, _ = _make_client([_make_response(status=status)])
        with pytest.raises(TransientSourceError) as exc:
            client.fetch("place-1")
        assert exc.value.status_code == status
        assert exc.value.retryable

    @pytest.mark.parametrize("status", [400, 404])
    def test_rejected_place_id(self, status):
        client, _ = _make_client([_make_response(status=status, text="not found")])
        with pytest.raises(PermanentSourceError) as exc:
            client.fetch("place-1")
        assert not exc.value.retryable

    def test_timeout_is_transient(self):
        client, _ = _make_client(requests.Timeout("slow"))
        with pytest.raises(TransientSourceError):
            client.fetch("place-1")

    def test_connection_error_is_transient(self):
        client, _ = _make_client(requests.ConnectionError("down"))
        with pytest.raises(TransientSourceError):
            client.fetch("place-1")

    def test_invalid_json_is_transient(self):
        client, _ = _make_client([_make_response(payload=ValueError("bad json"))])
        with pytest.raises(TransientSourceError):
            client.fetch("place-1")


class TestSession:
    def test_token_header(self):
        client = ReviewSourceClient({"source": {"token": "secret"}})
        assert client.session.headers[TOKEN_HEADER] == "secret"
        client.close()

    def test_token_from_env(self, monkeypatch):
        monkeypatch.setenv("MY_TOKEN", "from-env")
        client = ReviewSourceClient({"source": {"token_env": "MY_TOKEN"}})
        assert client.token == "from-env"

import pytest
import requests

from apps.search.exceptions import (
    UpstreamCallError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from apps.search.services.deadline import Deadline
from apps.search.services.provider import PaperSearchClient, SearchResult, parse_results

HF_PAYLOAD = [
    {
        "paper": {
            "id": "2312.00752",
            "title": "Mamba: Linear-Time Sequence Modeling with Selective State Spaces",
            "summary": "Foundation models ...",
            "publishedAt": "2023-12-01T18:01:34.000Z",
        },
        "numComments": 3,
    },
    {"paper": {"id": "2401.04088", "title": "Mixtral of Experts"}},
]


@pytest.fixture
def session(mocker):
    return mocker.Mock()


def _client(session):
    return PaperSearchClient("https://search.test/api/papers/search", timeout=10.0, session=session)


class TestSearchResult:

    def test_embedding_text_joins_title_and_summary(self):
        result = SearchResult(id="1", title="Title", summary="Summary")
        assert result.embedding_text == "Title. Summary"

    def test_embedding_text_without_summary(self):
        assert SearchResult(id="1", title="Title").embedding_text == "Title"

    def test_dict_round_trip_uses_camel_case(self):
        data = {"id": "1", "title": "T", "summary": "S", "publishedAt": "2024-01-01"}
        result = SearchResult.from_dict(data)
        assert result.published_at == "2024-01-01"
        assert result.to_dict() == data


class TestParseResults:

    def test_unwraps_paper_items(self):
        results = parse_results(HF_PAYLOAD)
        assert [r.id for r in results] == ["2312.00752", "2401.04088"]
        assert results[0].published_at == "2023-12-01T18:01:34.000Z"
        assert results[1].summary == ""

    def test_accepts_flat_items(self):
        results = parse_results([{"id": "a", "title": "A", "summary": "s", "publishedAt": "x"}])
        assert results == [SearchResult(id="a", title="A", summary="s", published_at="x")]

    def test_drops_items_without_id_or_title(self):
        payload = [
            {"id": "a", "title": "A"},
            {"id": "", "title": "No id"},
            {"id": "b"},
            {"paper": {"title": "Missing id"}},
            "not an object",
        ]
        assert [r.id for r in parse_results(payload)] == ["a"]

    def test_non_array_body_is_rejected(self):
        with pytest.raises(UpstreamResponseError):
            parse_results({"error": "nope"})


class TestPaperSearchClient:

    def test_sends_query_parameter(self, session, mocker):
        session.get.return_value = mocker.Mock(status_code=200, **{"json.return_value": HF_PAYLOAD})

        results = _client(session).search("state space models")

        assert len(results) == 2
        args, kwargs = session.get.call_args
        assert args == ("https://search.test/api/papers/search",)
        assert kwargs["params"] == {"q": "state space models"}
        assert kwargs["timeout"] == 10.0

    def test_deadline_bounds_timeout(self, session, mocker):
        session.get.return_value = mocker.Mock(status_code=200, **{"json.return_value": []})
        _client(session).search("q", deadline=Deadline(1.0))
        assert session.get.call_args.kwargs["timeout"] <= 1.0

    def test_non_2xx_is_fatal(self, session, mocker):
        session.get.return_value = mocker.Mock(status_code=503)
        with pytest.raises(UpstreamCallError) as excinfo:
            _client(session).search("q")
        assert excinfo.value.status_code == 503

    def test_invalid_json_is_fatal(self, session, mocker):
        session.get.return_value = mocker.Mock(
            status_code=200, **{"json.side_effect": ValueError("bad")}
        )
        with pytest.raises(UpstreamResponseError):
            _client(session).search("q")

    def test_timeout(self, session):
        session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(UpstreamTimeoutError):
            _client(session).search("q")

    def test_connection_error(self, session):
        session.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(UpstreamCallError):
            _client(session).search("q")

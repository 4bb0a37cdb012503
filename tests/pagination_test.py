from __future__ import annotations

from typing import Callable

import httpx
import pytest

from entra_backup.errors import GraphRequestError, ListingError
from entra_backup.graph_client import GraphClient
from entra_backup.pagination import ListQuery, PaginatedFetcher

from .conftest import GRAPH, FakeGraph, graph_error

QUERY = ListQuery(path="/v1.0/applications", select=("id", "displayName"), count=True, eventual_consistency=True)


def paged(pages: dict) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=pages[request.url.params.get("$skiptoken")])

    return handler


def test_fetch_all_returns_every_page_in_order(fake_graph: FakeGraph, graph: GraphClient) -> None:
    fake_graph.add(
        "GET",
        "/v1.0/applications",
        paged(
            {
                None: {"value": [{"id": "1"}, {"id": "2"}], "@odata.nextLink": f"{GRAPH}/v1.0/applications?$skiptoken=p2"},
                "p2": {"value": [{"id": "3"}], "@odata.nextLink": f"{GRAPH}/v1.0/applications?$skiptoken=p3"},
                "p3": {"value": [{"id": "4"}, {"id": "5"}]},
            }
        ),
    )

    items = PaginatedFetcher(graph).fetch_all(QUERY)

    assert [item["id"] for item in items] == ["1", "2", "3", "4", "5"]
    requests = fake_graph.calls("GET", "/v1.0/applications")
    assert len(requests) == 3
    assert all(r.headers["ConsistencyLevel"] == "eventual" for r in requests)
    first = requests[0].url.params
    assert first["$top"] == "999"
    assert first["$count"] == "true"
    assert first["$select"] == "id,displayName"


def test_fetch_all_stops_on_empty_page_with_next_link(fake_graph: FakeGraph, graph: GraphClient) -> None:
    fake_graph.add(
        "GET",
        "/v1.0/applications",
        paged(
            {
                None: {"value": [{"id": "1"}], "@odata.nextLink": f"{GRAPH}/v1.0/applications?$skiptoken=p2"},
                "p2": {"value": [], "@odata.nextLink": f"{GRAPH}/v1.0/applications?$skiptoken=p3"},
                "p3": {"value": [{"id": "never"}]},
            }
        ),
    )

    items = PaginatedFetcher(graph).fetch_all(QUERY)

    assert items == [{"id": "1"}]
    assert len(fake_graph.calls("GET", "/v1.0/applications")) == 2


def test_fetch_all_stops_when_next_link_repeats(fake_graph: FakeGraph, graph: GraphClient) -> None:
    loop = f"{GRAPH}/v1.0/applications?$skiptoken=again"
    fake_graph.add(
        "GET",
        "/v1.0/applications",
        paged({None: {"value": [{"id": "1"}], "@odata.nextLink": loop}, "again": {"value": [{"id": "2"}], "@odata.nextLink": loop}}),
    )

    items = PaginatedFetcher(graph).fetch_all(QUERY)

    assert [item["id"] for item in items] == ["1", "2"]


def test_page_failure_discards_partial_results(fake_graph: FakeGraph, graph: GraphClient) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$skiptoken"):
            return graph_error(403, "Insufficient privileges", "Authorization_RequestDenied")
        return httpx.Response(200, json={"value": [{"id": "1"}], "@odata.nextLink": f"{GRAPH}/v1.0/applications?$skiptoken=p2"})

    fake_graph.add("GET", "/v1.0/applications", handler)

    with pytest.raises(ListingError) as info:
        PaginatedFetcher(graph).fetch_all(QUERY)

    assert "page 2" in str(info.value)
    assert isinstance(info.value.__cause__, GraphRequestError)


def test_page_size_is_capped(fake_graph: FakeGraph, graph: GraphClient) -> None:
    fake_graph.add("GET", "/v1.0/applications", {"value": []})

    PaginatedFetcher(graph, page_size=5000).fetch_all(ListQuery(path="/v1.0/applications"))

    request = fake_graph.calls("GET", "/v1.0/applications")[0]
    assert request.url.params["$top"] == "999"
    assert "ConsistencyLevel" not in request.headers


def test_query_params() -> None:
    query = ListQuery(path="/v1.0/servicePrincipals", filter="appId eq 'x'", orderby="displayName", top=50)

    assert query.params(999) == {"$top": "50", "$filter": "appId eq 'x'", "$orderby": "displayName"}
    assert query.headers() == {}

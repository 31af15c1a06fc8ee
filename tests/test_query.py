from token_aggregator.models import FilterRequest
from token_aggregator.query import filter_sort_paginate
from token_aggregator.scoring import score_records


def _records(make_record):
    return score_records(
        [
            make_record("LOW", volume_sol=500.0, market_cap_sol=50.0, price_1hr_change=3.0),
            make_record("HIGH", volume_sol=1000.0, market_cap_sol=10.0, price_1hr_change=-1.0,
                        price_24hr_change=12.0),
        ]
    )


def test_sort_by_volume_desc(make_record):
    page = filter_sort_paginate(_records(make_record), FilterRequest(sort_by="volume", sort_order="desc"))
    assert [r.token_address for r in page.data] == ["HIGH", "LOW"]


def test_sort_ascending(make_record):
    page = filter_sort_paginate(_records(make_record), FilterRequest(sort_by="market_cap", sort_order="asc"))
    assert [r.token_address for r in page.data] == ["HIGH", "LOW"]


def test_min_volume_filter(make_record):
    page = filter_sort_paginate(_records(make_record), FilterRequest(min_volume=600))
    assert [r.token_address for r in page.data] == ["HIGH"]
    assert page.total == 1


def test_pagination_cursor(make_record):
    records = _records(make_record)

    first = filter_sort_paginate(records, FilterRequest(limit=1))
    assert first.has_more is True
    assert first.next_cursor == "1"
    assert [r.token_address for r in first.data] == ["HIGH"]

    second = filter_sort_paginate(records, FilterRequest(limit=1, cursor=first.next_cursor))
    assert second.has_more is False
    assert second.next_cursor is None
    assert [r.token_address for r in second.data] == ["LOW"]


def test_time_period_drops_missing_optional_changes(make_record):
    page = filter_sort_paginate(_records(make_record), FilterRequest(time_period="24h"))
    assert [r.token_address for r in page.data] == ["HIGH"]


def test_price_change_follows_time_period(make_record):
    records = _records(make_record)

    hourly = filter_sort_paginate(records, FilterRequest(sort_by="price_change"))
    assert [r.token_address for r in hourly.data] == ["LOW", "HIGH"]

    daily = filter_sort_paginate(records, FilterRequest(sort_by="price_change", time_period="24h"))
    assert [r.token_address for r in daily.data] == ["HIGH"]


def test_invalid_cursor_starts_from_beginning(make_record):
    page = filter_sort_paginate(_records(make_record), FilterRequest(cursor="abc"))
    assert page.total == 2
    assert len(page.data) == 2


def test_page_wire_shape(make_record):
    payload = filter_sort_paginate(_records(make_record), FilterRequest(limit=1)).to_dict()
    assert set(payload) == {"data", "next_cursor", "has_more", "total"}
    assert payload["data"][0]["token_address"] == "HIGH"
    assert payload["data"][0]["sources"] == ["dexscreener"]


def test_min_market_cap_filter(make_record):
    page = filter_sort_paginate(_records(make_record), FilterRequest(min_market_cap=20))
    assert [r.token_address for r in page.data] == ["LOW"]
    assert page.total == 1

    inclusive = filter_sort_paginate(_records(make_record), FilterRequest(min_market_cap=50))
    assert [r.token_address for r in inclusive.data] == ["LOW"]

from datetime import date

import pytest
from pydantic import ValidationError

from backend.app.schemas import DateRange, SyncRequest


def test_date_range_serializes_with_from_alias():
    by_name = DateRange(from_="2024-01-01", to="2024-01-31")
    by_alias = DateRange.model_validate({"from": "2024-01-01", "to": "2024-01-31"})

    assert by_name == by_alias
    assert by_name.model_dump(by_alias=True) == {"from": "2024-01-01", "to": "2024-01-31"}


def test_sync_request_rejects_inverted_range():
    with pytest.raises(ValidationError):
        SyncRequest(from_date=date(2024, 2, 1), to_date=date(2024, 1, 1))

    assert SyncRequest().from_date is None

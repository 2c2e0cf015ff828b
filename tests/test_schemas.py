import os
import sys

import pytest
from pydantic import ValidationError

# Ensure 'src' is on the import path for tests
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from gateway.schemas import (
    AnalyzeRequest,
    FailedItem,
    InvalidItem,
    LicenseInfo,
    ParseResponse,
    SyncedItem,
    SyncResponse,
)


def test_analyze_request_defaults_and_validation():
    req = AnalyzeRequest(trades=[{"symbol": "AAPL"}])
    assert req.analysis_type == "single"

    with pytest.raises(ValidationError):
        AnalyzeRequest(trades=[])
    with pytest.raises(ValidationError):
        AnalyzeRequest(trades=[{"symbol": "AAPL"}], analysis_type="monthly")


def test_parse_response_error_shape():
    resp = ParseResponse(error="PARSE_FAILED", message="Could not extract JSON")
    data = resp.model_dump()
    assert data["trades"] is None
    assert data["meta"]["token_usage"] == {"input": 0, "output": 0}


def test_sync_response_serialization():
    resp = SyncResponse(
        synced_count=1,
        succeeded=[SyncedItem(index=0, page_id="p1")],
        failed=[FailedItem(index=2, reason="RATE_LIMITED", status_code=429)],
        invalid=[InvalidItem(index=1, errors=["missing_price"])],
    )
    data = resp.model_dump()
    assert data["succeeded"] == [{"index": 0, "page_id": "p1"}]
    assert data["failed"][0]["status_code"] == 429
    assert data["invalid"][0]["errors"] == ["missing_price"]


def test_license_info_optional_fields():
    info = LicenseInfo(key="ABCD-EFGH-JKMN-PQRS", status="unused")
    assert info.activated_at is None
    assert info.has_notion is False

"""
Tests for schema validation.
"""

import pytest
from jobcache.schema import (
    Job,
    JobStatus,
    new_job_id,
    validate_job,
    validate_results_by_keyword,
)


class TestValidateJob:
    """Test job record validation."""

    def test_valid_job_minimal(self):
        """Empty record is valid; every field is optional."""
        assert validate_job({}) == []

    def test_valid_job_full(self):
        data = Job(job_id="abc", owner_id="owner-1", metadata={"q": "coffee"}).to_dict()
        assert validate_job(data) == []

    def test_enum_status_accepted(self):
        assert validate_job({"status": JobStatus.RUNNING}) == []

    def test_unknown_status(self):
        errors = validate_job({"status": "exploded"})
        assert len(errors) == 1
        assert "status" in errors[0].lower()

    def test_non_string_timestamps(self):
        errors = validate_job({"created_at": 12345, "updated_at": ["x"]})
        assert any("created_at" in err for err in errors)
        assert any("updated_at" in err for err in errors)

    def test_blank_owner(self):
        errors = validate_job({"owner_id": "   "})
        assert any("owner_id" in err for err in errors)

    def test_metadata_must_be_object(self):
        errors = validate_job({"metadata": ["not", "a", "dict"]})
        assert any("metadata" in err for err in errors)

    def test_not_a_dict(self):
        assert validate_job(["job"]) == ["Job record must be a JSON object"]

    def test_unknown_fields_allowed(self):
        assert validate_job({"status": "queued", "progress": 0.5}) == []


class TestValidateResults:

    def test_valid(self):
        assert validate_results_by_keyword({"coffee": [1, 2], "tea": []}) == []

    def test_not_a_mapping(self):
        assert len(validate_results_by_keyword([1, 2])) == 1

    def test_records_must_be_list(self):
        errors = validate_results_by_keyword({"coffee": "x"})
        assert any("coffee" in err for err in errors)

    def test_empty_keyword(self):
        errors = validate_results_by_keyword({"": []})
        assert len(errors) == 1


class TestJob:

    def test_defaults(self):
        job = Job(job_id="abc")
        assert job.status == JobStatus.QUEUED
        assert job.metadata == {}
        assert job.created_at

    def test_dict_roundtrip(self):
        job = Job(job_id="abc", owner_id="o", status=JobStatus.FAILED, metadata={"k": 1})
        data = job.to_dict()
        assert data["status"] == "failed"
        assert Job.from_dict(data) == job

    def test_from_partial_dict(self):
        job = Job.from_dict({"job_id": "abc"})
        assert job.status == JobStatus.QUEUED
        assert job.owner_id is None

    @pytest.mark.parametrize("status,terminal", [
        (JobStatus.QUEUED, False),
        (JobStatus.RUNNING, False),
        (JobStatus.COMPLETED, True),
        (JobStatus.FAILED, True),
        (JobStatus.CANCELLED, True),
    ])
    def test_is_terminal(self, status, terminal):
        assert status.is_terminal is terminal

    def test_new_job_id_unique(self):
        ids = {new_job_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 32 and ":" not in i for i in ids)

import pandas as pd
import pytest

from conftest import FakeResponse, FakeSession, make_frame, make_record
from survey_qc.config_runtime import CredentialError
from survey_qc.ingest.survey_source import (
    SchemaError,
    SurveyExportClient,
    SurveySourceError,
    load_records,
    read_records_csv,
)


def _write(tmp_path, df, name="responses.csv"):
    path = tmp_path / name
    df.to_csv(path, index=False)
    return path


def test_codes_are_read_as_text(tmp_path):
    path = _write(tmp_path, pd.DataFrame({"response_id": ["007"], "gender": ["2"]}))
    df = read_records_csv(path)
    assert df.loc[0, "response_id"] == "007"
    assert df.loc[0, "gender"] == "2"


def test_missing_input_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_records_csv(tmp_path / "absent.csv")


def test_missing_required_column_is_a_schema_error(settings, tmp_path):
    path = _write(tmp_path, make_frame([make_record(1)]).drop(columns=["strata_region"]))
    with pytest.raises(SchemaError, match="strata_region"):
        load_records(settings, None, input_csv=path)


def test_explicit_input_wins_over_cache(settings, tmp_path):
    cache = _write(tmp_path, make_frame([make_record(1)]), "cache.csv")
    explicit = _write(tmp_path, make_frame([make_record(1), make_record(2)]), "explicit.csv")
    df, source = load_records(settings, cache, input_csv=explicit)
    assert len(df) == 2
    assert source == str(explicit)


def test_remote_export_is_used_when_online(settings, tmp_path):
    body = make_frame([make_record(1), make_record(2), make_record(3)]).to_csv(index=False)
    client = SurveyExportClient("https://example.test/export", "tok", session=FakeSession([FakeResponse(200, text=body)]))
    df, source = load_records(settings, tmp_path / "cache.csv", client=client)
    assert len(df) == 3
    assert source == "remote export"


def test_offline_ignores_the_remote_export(settings, tmp_path):
    cache = _write(tmp_path, make_frame([make_record(1)]), "cache.csv")
    session = FakeSession()
    client = SurveyExportClient("https://example.test/export", session=session)
    df, _ = load_records(settings, cache, client=client, offline=True)
    assert len(df) == 1
    assert session.calls == []


def test_failed_export_falls_back_to_cache(settings, tmp_path):
    cache = _write(tmp_path, make_frame([make_record(1)]), "cache.csv")
    client = SurveyExportClient("https://example.test/export", session=FakeSession([FakeResponse(502, text="bad gateway")]))
    df, source = load_records(settings, cache, client=client)
    assert len(df) == 1
    assert source == str(cache)


def test_failed_export_without_cache_raises(settings, tmp_path):
    client = SurveyExportClient("https://example.test/export", session=FakeSession([FakeResponse(500)]))
    with pytest.raises(SurveySourceError):
        load_records(settings, tmp_path / "absent.csv", client=client)


def test_rejected_export_credentials_never_fall_back(settings, tmp_path):
    cache = _write(tmp_path, make_frame([make_record(1)]), "cache.csv")
    client = SurveyExportClient("https://example.test/export", "tok", session=FakeSession([FakeResponse(403)]))
    with pytest.raises(CredentialError):
        load_records(settings, cache, client=client)

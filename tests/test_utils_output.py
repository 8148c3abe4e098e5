"""Tests for utils/output.py: JSON and table output routing."""
import json

from cloud_auth.utils.output import OutputFormat, print_json, print_output


def test_print_json_dict(capsys):
    print_json({"key": "value"})
    assert json.loads(capsys.readouterr().out) == {"key": "value"}


def test_print_json_serializes_datetimes(capsys):
    from datetime import datetime, timezone

    print_json({"at": datetime(2024, 1, 1, tzinfo=timezone.utc)})
    assert json.loads(capsys.readouterr().out) == {"at": "2024-01-01 00:00:00+00:00"}


def test_print_output_json_routes_to_stdout(capsys):
    print_output({"a": 1}, OutputFormat.JSON)
    assert json.loads(capsys.readouterr().out) == {"a": 1}


def test_print_output_table_goes_to_stderr(capsys):
    print_output({"has_token": True, "expires_at": None}, OutputFormat.TABLE, title="Status")
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "has_token" in captured.err


def test_print_output_table_list(capsys):
    print_output([{"a": 1, "b": 2}, {"a": 3, "b": 4}], OutputFormat.TABLE)
    assert "a" in capsys.readouterr().err


def test_print_output_empty_list(capsys):
    print_output([], OutputFormat.TABLE)
    assert "No results" in capsys.readouterr().err

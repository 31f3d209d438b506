"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from insightvault.cli import _dataset_id_from, main

CSV_TEXT = """title,year,genre,rating
Jaws,1975,Thriller,8.1
Star Wars,1977,Sci-Fi,8.6
Alien,1979,Sci-Fi,8.5
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def ingested(tmp_path, runner):
    """A DuckDB file holding the 'movies' dataset."""
    csv_path = tmp_path / "movies.csv"
    csv_path.write_text(CSV_TEXT)
    db_path = str(tmp_path / "iv.duckdb")
    result = runner.invoke(main, ["ingest", str(csv_path), "--db-path", db_path])
    assert result.exit_code == 0, result.output
    return db_path


def test_dataset_id_from_file_name(tmp_path):
    """File names become safe dataset ids."""
    assert _dataset_id_from(tmp_path / "Top Movies (2024).csv") == "top_movies_2024"


def test_ingest_reports_counts(ingested, runner):
    """Ingest prints the stored row count."""
    result = runner.invoke(main, ["datasets", "--db-path", ingested])
    assert result.exit_code == 0
    assert "movies\ttabular\t3 rows\tmovies.csv" in result.output


def test_ask_offline_json(ingested, runner):
    """Structural questions are answered without any LLM."""
    result = runner.invoke(
        main,
        ["ask", "top 2 by rating", "--dataset-id", "movies", "--db-path", ingested, "--offline", "--json"],
    )
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["answer"].split("\n")[0].startswith("1. Star Wars (rating: 8.6)")
    assert data["chartData"]["type"] == "bar"


def test_ask_offline_plain_text(ingested, runner):
    result = runner.invoke(
        main, ["ask", "average rating", "--dataset-id", "movies", "--db-path", ingested, "--offline"]
    )
    assert result.exit_code == 0
    assert result.output.strip() == "8.40"


def test_schema_command(ingested, runner):
    """The schema command prints inferred field classes."""
    result = runner.invoke(main, ["schema", "--dataset-id", "movies", "--db-path", ingested])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["numeric_fields"] == ["year", "rating"]
    assert data["title_field"] == "title"


def test_schema_unknown_dataset(ingested, runner):
    """An unknown dataset aborts with a non-zero exit code."""
    result = runner.invoke(main, ["schema", "--dataset-id", "nope", "--db-path", ingested])
    assert result.exit_code != 0


def test_empty_csv_aborts(tmp_path, runner):
    """A header-only CSV is refused."""
    csv_path = tmp_path / "empty.csv"
    csv_path.write_text("title,year\n")
    result = runner.invoke(main, ["ingest", str(csv_path), "--db-path", str(tmp_path / "iv.duckdb")])
    assert result.exit_code != 0


def test_suggest_offline(ingested, runner):
    """Offline suggestions print the fixed numbered list minus asked questions."""
    result = runner.invoke(
        main,
        [
            "suggest",
            "--dataset-id",
            "movies",
            "--db-path",
            ingested,
            "--offline",
            "--exclude",
            "Find any outliers or anomalies",
        ],
    )
    assert result.exit_code == 0, result.output
    lines = result.output.strip().split("\n")
    assert lines[0] == "1. What are the top 5 rows by value?"
    assert len(lines) == 3


def test_summary_offline(ingested, runner):
    result = runner.invoke(main, ["summary", "--dataset-id", "movies", "--db-path", ingested, "--offline"])
    assert result.exit_code == 0
    assert result.output.startswith("This dataset has 3 rows and 4 columns: title, year, genre, rating.")


def test_summary_unknown_dataset(ingested, runner):
    """Nothing to summarize aborts."""
    result = runner.invoke(main, ["summary", "--dataset-id", "nope", "--db-path", ingested, "--offline"])
    assert result.exit_code != 0

import os
import subprocess
import sys

from conftest import make_csv
from tools import import_results

ROWS = [
    ["", "Al Noor School", "Alpha", "North", "", "Ahmed Ali", "85", ""],
    ["BF1", "Bright Future School", "Alpha", "North", "", "Sara Hassan", "90", ""],
]


def write_sheet(tmp_path, rows=ROWS):
    path = tmp_path / "grade6.csv"
    path.write_bytes(make_csv(rows))
    return str(path)


def test_preview_only_writes_nothing(tmp_path, repo, capsys):
    code = import_results.main(
        ["--file", write_sheet(tmp_path), "--grade", "6", "--exam-year-id", str(repo.ids["year"])],
        repository=repo,
    )

    assert code == 0
    assert "Preview only" in capsys.readouterr().out
    assert repo.transactions == 0


def test_apply_writes_results_and_exports(tmp_path, repo, capsys):
    export_dir = tmp_path / "exports"

    code = import_results.main(
        [
            "--file", write_sheet(tmp_path),
            "--grade", "6",
            "--exam-year-id", str(repo.ids["year"]),
            "--apply",
            "--export-dir", str(export_dir),
        ],
        repository=repo,
    )

    assert code == 0
    out = capsys.readouterr().out
    assert "schools_created: 1" in out
    assert "School logins:" in out
    assert sorted(p.name for p in export_dir.iterdir()) == [
        "results_upload_invalid_rows.csv",
        "results_upload_nomarks_rows.csv",
        "results_upload_unmatched_rows.csv",
        "results_upload_unmatchedstudents_rows.csv",
    ]
    assert len(repo.rows("results")) == 2


def test_unknown_exam_year_is_rejected(tmp_path, repo, capsys):
    code = import_results.main(
        ["--file", write_sheet(tmp_path), "--grade", "6", "--exam-year-id", "999"],
        repository=repo,
    )

    assert code == 2
    assert "999" in capsys.readouterr().err


def test_bad_location_hint_is_rejected(tmp_path, repo, capsys):
    code = import_results.main(
        [
            "--file", write_sheet(tmp_path),
            "--grade", "6",
            "--exam-year-id", str(repo.ids["year"]),
            "--default-cluster-id", "alpha",
        ],
        repository=repo,
    )

    assert code == 2
    assert "not a valid id" in capsys.readouterr().err


def test_runs_as_a_module_from_the_project_root():
    root = os.path.dirname(os.path.abspath(__file__))

    completed = subprocess.run(
        [sys.executable, "-m", "tools.import_results", "--help"],
        cwd=root, capture_output=True, text=True, timeout=60,
    )

    assert completed.returncode == 0, completed.stderr
    assert "--exam-year-id" in completed.stdout

import pytest
from rich.console import Console
from typer.testing import CliRunner

from docinsight.cli import main as cli

from conftest import FakeModel, build_pdf, insights_json, sentences

runner = CliRunner()


@pytest.fixture
def cli_service(service, monkeypatch):
    monkeypatch.setattr(cli.DocInsight, "from_env", classmethod(lambda cls: service))
    monkeypatch.setattr(cli, "console", Console(width=200))
    return service


def test_upload_processes_and_lists(cli_service, tmp_path):
    pdf_path = tmp_path / "paper.pdf"
    pdf_path.write_bytes(build_pdf([sentences(20)]))

    result = runner.invoke(cli.app, ["upload", str(pdf_path), "--owner", "alice"])
    assert result.exit_code == 0, result.output
    assert "Document ready" in result.output

    listed = runner.invoke(cli.app, ["documents", "--owner", "alice"])
    assert listed.exit_code == 0
    assert "paper.pdf" in listed.output
    assert "ready" in listed.output


def test_upload_rejects_non_pdf(cli_service, tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("hello")
    result = runner.invoke(cli.app, ["upload", str(path)])
    assert result.exit_code == 1
    assert "Upload failed" in result.output


def test_process_unknown_document_fails(cli_service):
    result = runner.invoke(cli.app, ["process", "missing-id"])
    assert result.exit_code == 1
    assert "Document not found." in result.output


def test_insights_and_search(cli_service, tmp_path):
    cli_service.insights.extractor.model = FakeModel([insights_json("Key finding")])
    pdf_path = tmp_path / "paper.pdf"
    pdf_path.write_bytes(build_pdf([sentences(5)]))
    runner.invoke(cli.app, ["upload", str(pdf_path)])
    document = cli_service.store.list_documents(cli.DEFAULT_OWNER)[0]

    result = runner.invoke(cli.app, ["insights", document.id])
    assert result.exit_code == 0, result.output
    assert "Key finding" in result.output

    progressive = runner.invoke(cli.app, ["insights", document.id, "--progressive"])
    assert "Loaded 1 cached insights" in progressive.output

    search = runner.invoke(cli.app, ["search", document.id, "word2x0 word2x1", "--threshold", "0"])
    assert search.exit_code == 0
    assert "#0" in search.output


def test_delete_with_confirmation_flag(cli_service, tmp_path):
    pdf_path = tmp_path / "paper.pdf"
    pdf_path.write_bytes(build_pdf(["Short text."]))
    runner.invoke(cli.app, ["upload", str(pdf_path), "--no-process"])
    document = cli_service.store.list_documents(cli.DEFAULT_OWNER)[0]

    result = runner.invoke(cli.app, ["delete", document.id, "--yes"])
    assert result.exit_code == 0
    assert cli_service.store.get_document(document.id) is None

    again = runner.invoke(cli.app, ["delete", document.id, "--yes"])
    assert again.exit_code == 1

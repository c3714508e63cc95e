import asyncio
import json
import logging
from pathlib import Path

import pytest

import codeexplain
from analyzer import FileDescriptor
from config import API_KEY_ENV, ExplainConfig
from explainer import ExplainedFile, TokenUsage
from providers import Provider, ProviderResponse


class _EchoProvider(Provider):
    def __init__(self):
        super().__init__(model="echo", max_tokens=10)
        self.calls = 0
        self.closed = False

    async def invoke(self, messages):
        self.calls += 1
        return ProviderResponse(content=f"explanation #{self.calls}")

    async def aclose(self):
        self.closed = True


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(API_KEY_ENV, raising=False)
    src = tmp_path / "src"
    src.mkdir()
    (src / "a.py").write_text("a = 1\n")
    (src / "b.py").write_text("b = 2\n")
    return src


def _explained(rel: str, text: str, cached: bool = False) -> ExplainedFile:
    fd = FileDescriptor(path=f"/repo/{rel}", relative_path=rel, content="", hash="h", language="python")
    return ExplainedFile(fd, text, cached)


def test_markdown_report_lists_files_and_usage():
    usage = TokenUsage(total_input_tokens=1200, total_output_tokens=300, total_tokens=1500, cached_files=1, processed_files=1)
    report = codeexplain.build_markdown_report(
        "Code Explanation: src",
        [_explained("a.py", "Explains a.", cached=True), _explained("b.py", "Explains b.")],
        ExplainConfig(),
        usage,
    )

    assert report.startswith("# Code Explanation: src")
    assert "## `a.py`" in report
    assert "*/repo/a.py* | python | cached" in report
    assert "Explains b." in report
    assert "- Input tokens: 1,200" in report
    assert "- Files from cache: 1" in report


def test_display_path_is_relative_to_single_directory(tmp_path: Path):
    target = tmp_path / "proj"
    (target / "pkg").mkdir(parents=True)

    assert codeexplain.display_path(str(target / "pkg" / "m.py"), [str(target)]) == "pkg/m.py"
    assert codeexplain.display_path(str(target / "pkg" / "m.py"), [str(target), "other"]) == "m.py"
    assert codeexplain.display_path("Final analysis", [str(target)]) == "Final analysis"


def test_progress_printer_format(tmp_path: Path, capsys):
    on_progress = codeexplain.make_progress_printer([str(tmp_path)])

    on_progress(str(tmp_path / "a.py"), 1, 3, 33, True, False)
    on_progress(str(tmp_path / "b.py"), 2, 3, 67, False, True)
    on_progress(str(tmp_path / "b.py"), 2, 3, 67, False, False)

    out = capsys.readouterr().out.splitlines()
    assert out == ["01 - [33%] [CACHE] a.py", "02 - [67%] b.py"]


def test_offline_mode_without_api_key(project: Path, tmp_path: Path):
    out = tmp_path / "report.md"

    asyncio.run(codeexplain.main([str(project), "--output", str(out)]))

    report = out.read_text()
    assert report.count(codeexplain.OFFLINE_EXPLANATION) == 2
    assert (tmp_path / ".codeexplain" / "config.json").exists()


def test_line_by_line_rejects_directories(project: Path):
    with pytest.raises(SystemExit) as exc:
        asyncio.run(codeexplain.main([str(project), "--mode", "linebyline", "--api-key", "k"]))
    assert exc.value.code == 1


def test_missing_path_exits_with_error(project: Path, capsys):
    with pytest.raises(SystemExit) as exc:
        asyncio.run(codeexplain.main(["does-not-exist", "--api-key", "k"]))
    assert exc.value.code == 1
    assert "does not exist" in capsys.readouterr().err


def test_full_run_writes_reports_and_reuses_cache(project: Path, tmp_path: Path, monkeypatch, capsys):
    provider = _EchoProvider()
    monkeypatch.setattr(codeexplain, "create_provider", lambda config: provider)
    out = tmp_path / "report.md"
    json_out = tmp_path / "report.json"
    argv = [str(project), "--api-key", "k", "--output", str(out), "--json-output", str(json_out)]

    asyncio.run(codeexplain.main(argv))
    first_out = capsys.readouterr().out

    assert provider.calls == 2
    assert provider.closed is True
    assert "explanation #1" in out.read_text()
    data = json.loads(json_out.read_text())
    assert [f["relative_path"] for f in data["files"]] == ["a.py", "b.py"]
    assert data["usage"]["processed_files"] == 2
    assert "Files processed: 2" in first_out

    asyncio.run(codeexplain.main(argv))
    second_out = capsys.readouterr().out

    assert provider.calls == 2
    assert "[CACHE] a.py" in second_out
    assert "Files from cache: 2" in second_out


def test_unknown_provider_in_config_file_fails_before_offline_mode(project: Path, tmp_path: Path, capsys):
    config_dir = tmp_path / ".codeexplain"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(json.dumps({"provider": "bogus"}))

    with pytest.raises(SystemExit) as exc:
        asyncio.run(codeexplain.main([str(project), "--output", str(tmp_path / "report.md")]))

    assert exc.value.code == 1
    assert "Unsupported AI provider: bogus" in capsys.readouterr().err
    assert not (tmp_path / "report.md").exists()


def test_verbose_in_config_file_enables_debug_logging(project: Path, tmp_path: Path):
    config_dir = tmp_path / ".codeexplain"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(json.dumps({"verbose": True}))
    root = logging.getLogger()
    previous = root.level

    try:
        asyncio.run(codeexplain.main([str(project), "--output", str(tmp_path / "report.md")]))
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(previous)

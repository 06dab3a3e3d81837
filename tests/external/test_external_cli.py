from __future__ import annotations

import json
from pathlib import Path
import shutil
import subprocess
import sys


def _tool_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _sample_metadata() -> Path:
    return _tool_root() / "metadata" / "win32.xml"


def _run(args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    run_cwd = _tool_root() if cwd is None else cwd
    return subprocess.run(
        [sys.executable, "projgen.py", *args],
        cwd=run_cwd,
        capture_output=True,
        text=True,
        check=False,
    )


def _run_generate(*requests: str, extra: list[str] | None = None) -> subprocess.CompletedProcess[str]:
    args = ["--metadata", str(_sample_metadata().resolve())]
    for request in requests:
        args.extend(["--request", request])
    return _run([*args, *(extra or [])])


def test_generate_prints_summary_for_requests() -> None:
    result = _run_generate("CreateFileW", "WM_*")

    assert result.returncode == 0
    assert "Projection generated:" in result.stdout
    assert "PInvoke.KERNEL32" in result.stdout
    assert "PInvoke.Constants" in result.stdout
    assert "Total:" in result.stdout


def test_generate_writes_manifest(tmp_path: Path) -> None:
    manifest = tmp_path / "out" / "manifest.json"

    result = _run_generate("CloseHandle", extra=["--manifest", str(manifest)])

    assert result.returncode == 0
    assert f"Manifest: {manifest}" in result.stdout
    data = json.loads(manifest.read_text(encoding="utf-8"))
    assert data["PInvoke.KERNEL32"] == ["ExternMethodDecl:CloseHandle"]


def test_requests_file_and_options_file_drive_generation(tmp_path: Path) -> None:
    requests_file = tmp_path / "NativeMethods.txt"
    requests_file.write_text("// comment\nGetWindowRect\n\nWM_*\n", encoding="utf-8")
    options = tmp_path / "NativeMethods.json"
    options.write_text(json.dumps({"allowMarshaling": False, "emitSingleFile": True}))

    result = _run(
        [
            "--metadata",
            str(_sample_metadata().resolve()),
            "--requests-file",
            str(requests_file),
            "--options",
            str(options),
        ]
    )

    assert result.returncode == 0
    assert "Style:      raw, single unit" in result.stdout
    assert "NativeMethods" in result.stdout
    assert "Total:" in result.stdout


def test_platform_flag_selects_architecture_variant() -> None:
    without_platform = _run_generate("RtlCaptureContext")
    with_platform = _run_generate("RtlCaptureContext", extra=["--platform", "x64"])

    assert without_platform.returncode == 1
    assert "only available for arm64, x64" in without_platform.stdout
    assert with_platform.returncode == 0
    assert "Platform:   x64" in with_platform.stdout


def test_list_namespaces_is_read_only_operation() -> None:
    result = _run(["--metadata", str(_sample_metadata().resolve()), "--list-namespaces"])

    assert result.returncode == 0
    assert result.stdout.startswith("6 namespaces:")
    assert "Windows.Win32.System.Com" in result.stdout


def test_suggest_prints_similar_names() -> None:
    result = _run(["--metadata", str(_sample_metadata().resolve()), "--suggest", "CreateFile"])

    assert result.returncode == 0
    assert result.stdout.splitlines() == ["CreateFileA", "CreateFileW"]


def test_suggest_without_match_fails() -> None:
    result = _run(["--metadata", str(_sample_metadata().resolve()), "--suggest", "Qqqq"])

    assert result.returncode == 1
    assert "nothing resembles 'Qqqq'" in result.stderr


def test_unknown_flag_returns_argparse_usage_code() -> None:
    result = _run(["--not-a-flag"])

    assert result.returncode == 2


def test_mutually_exclusive_discovery_flags_return_usage_error() -> None:
    result = _run(["--suggest", "CreateFile", "--list-namespaces"])

    assert result.returncode == 2


def test_generate_mode_requires_requests() -> None:
    result = _run(["--metadata", str(_sample_metadata().resolve())])

    combined_output = result.stdout + result.stderr
    assert result.returncode == 1
    assert "MISSING_REQUESTS" in combined_output


def test_discovery_with_requests_is_a_conflict() -> None:
    result = _run_generate("CloseHandle", extra=["--list-namespaces"])

    assert result.returncode == 1
    assert "CONFLICT_GENERATE_DISCOVERY" in result.stdout


def test_standalone_missing_metadata_degrades_without_traceback(tmp_path: Path) -> None:
    isolated = tmp_path / "projgen.py"
    shutil.copy2(_tool_root() / "projgen.py", isolated)

    result = subprocess.run(
        [sys.executable, str(isolated), "--request", "CloseHandle"],
        cwd=tmp_path,
        capture_output=True,
        text=True,
        check=False,
    )

    combined_output = result.stdout + result.stderr
    assert result.returncode == 1
    assert "PATH_NOT_FOUND" in combined_output
    assert "--metadata" in combined_output
    assert "Traceback (most recent call last)" not in combined_output


def test_help_stable_surface_includes_public_flags() -> None:
    result = _run(["--help"])

    combined_output = result.stdout + result.stderr
    assert result.returncode == 0
    for flag in (
        "--metadata",
        "--request",
        "--requests-file",
        "--options",
        "--platform",
        "--docs",
        "--templates",
        "--manifest",
        "--suggest",
        "--list-namespaces",
    ):
        assert flag in combined_output

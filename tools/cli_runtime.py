#!/usr/bin/env python3
"""Shared runtime helpers for the cloudbackup-prepare CLI (version, doctor, self-test)."""

from __future__ import annotations

import base64
import hashlib
import io
import json
import os
import platform
import stat
import sys
import time
import zlib
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


def resolve_repo_root(script_file: str) -> Path:
    """Resolve repo root for source and PyInstaller-frozen execution."""
    meipass = getattr(sys, "_MEIPASS", None)
    if meipass:
        root = Path(meipass)
        if (root / "api").exists():
            return root
        if (root / "_internal" / "api").exists():
            return root / "_internal"
    return Path(script_file).resolve().parent.parent


def ensure_api_path(repo_root: Path) -> None:
    api_dir = str(repo_root / "api")
    if api_dir not in sys.path:
        sys.path.insert(0, api_dir)


def _component_version(module_name: str) -> Optional[str]:
    try:
        module = __import__(module_name)
    except Exception:
        return None
    return getattr(module, "__version__", None) or "installed"


def get_build_info(tool: str, repo_root: Path) -> Dict[str, Any]:
    return {
        "tool": tool,
        "prepare_version": os.environ.get("CLOUDBACKUP_BUILD_VERSION", "dev"),
        "build_commit": os.environ.get("GITHUB_SHA") or os.environ.get("CLOUDBACKUP_BUILD_COMMIT") or "",
        "platform": platform.platform(),
        "system": platform.system(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "frozen": bool(getattr(sys, "frozen", False)),
        "repo_root": str(repo_root),
        "components": {
            "cryptography": _component_version("cryptography"),
            "snappy": _component_version("snappy"),
            "pydantic": _component_version("pydantic"),
            "semver": _component_version("semver"),
        },
    }


def _check(name: str, ok: bool, severity: str = "error", **extra: Any) -> Dict[str, Any]:
    row = {"name": name, "ok": bool(ok), "severity": severity}
    row.update(extra)
    return row


def summarize_checks(checks: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    checks = list(checks)
    errors = sum(1 for c in checks if not c.get("ok") and c.get("severity") == "error")
    warnings = sum(1 for c in checks if not c.get("ok") and c.get("severity") == "warning")
    return {
        "checks_total": len(checks),
        "checks_passed": sum(1 for c in checks if c.get("ok")),
        "errors": errors,
        "warnings": warnings,
        "ok": errors == 0,
    }


def group_or_world_writable(path: Path) -> bool:
    if os.name == "nt":
        return False
    try:
        mode = path.stat().st_mode
    except OSError:
        return False
    return bool(mode & (stat.S_IWGRP | stat.S_IWOTH))


def doctor_checks_common(
    *,
    tool: str,
    repo_root: Path,
    backup_file: Optional[Path] = None,
    output_file: Optional[Path] = None,
    encryption_key: str = "",
    agent_version: str = "",
    decrypt: bool = False,
    decompress: bool = False,
    unsafe_perms_ok: bool = False,
    extra_checks: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    ensure_api_path(repo_root)
    from prepare_cipher import decode_key  # type: ignore
    from prepare_errors import PrepareError  # type: ignore
    from prepare_policy import resolve_layout  # type: ignore

    checks: List[Dict[str, Any]] = []
    checks.append(_check("repo_root_exists", repo_root.exists(), path=str(repo_root)))
    checks.append(_check("api_dir_exists", (repo_root / "api").exists(), path=str(repo_root / "api")))
    checks.append(_check("tool_name", True, severity="info", tool=tool))

    for component in ("cryptography", "snappy", "pydantic", "semver"):
        checks.append(_check(f"component_{component}", _component_version(component) is not None))

    if backup_file is None:
        checks.append(_check("backup_file", False, severity="warning", path="", detail="not given"))
    else:
        exists = backup_file.exists()
        checks.append(_check("backup_file", exists and backup_file.is_file(), path=str(backup_file), exists=exists))

    if output_file is not None:
        checks.append(_check("output_file_absent", not output_file.exists(), path=str(output_file)))
        parent = output_file.parent
        ok = parent.is_dir()
        detail = None
        if ok and group_or_world_writable(parent) and not unsafe_perms_ok:
            ok = False
            detail = "group/world-writable (use --unsafe-perms-ok to override)"
        checks.append(_check("output_dir", ok, severity="warning", path=str(parent), detail=detail))

    if encryption_key:
        try:
            key_bytes = decode_key(encryption_key)
            checks.append(_check("encryption_key", True, key_bytes=len(key_bytes)))
        except PrepareError as exc:
            checks.append(_check("encryption_key", False, code=exc.code, detail=exc.detail))
    else:
        checks.append(_check("encryption_key", True, severity="info", detail="no key; cipher stage disabled"))

    try:
        layout = resolve_layout(agent_version, decrypt, decompress, bool(encryption_key))
        checks.append(_check("pipeline_layout", True, severity="info", layout=layout.to_dict()))
    except PrepareError as exc:
        checks.append(_check("pipeline_layout", False, code=exc.code, detail=exc.detail))

    if extra_checks:
        checks.extend(extra_checks)

    return {
        "version": "cloudbackup-prepare-doctor-v1",
        "build": get_build_info(tool, repo_root),
        "checks": checks,
        "summary": summarize_checks(checks),
    }


def self_test_core(*, tool: str, repo_root: Path) -> Dict[str, Any]:
    checks: List[Dict[str, Any]] = []
    started = time.time()
    payload = b"cloudbackup-self-test::" + os.urandom(32) * 64
    key_bytes = os.urandom(32)
    key = base64.urlsafe_b64encode(key_bytes).decode("ascii")

    ensure_api_path(repo_root)

    def _roundtrip(name: str, agent_version: str, compress) -> None:
        try:
            import prepare_cipher  # type: ignore
            from prepare_contracts import PrepareRequest  # type: ignore
            from prepare_pipeline import prepare_stream  # type: ignore

            # the agent compresses first and encrypts the compressed bytes
            artifact = prepare_cipher.make_keystream(key_bytes).update(compress(payload))
            out = io.BytesIO()
            prepare_stream(io.BytesIO(artifact), out, PrepareRequest(agent_version=agent_version, encryption_key=key))
            checks.append(_check(name, out.getvalue() == payload, artifact_bytes=len(artifact)))
        except Exception as exc:
            checks.append(_check(name, False, detail=str(exc)))

    def _snappy_framed(data: bytes) -> bytes:
        import snappy  # type: ignore
        return snappy.StreamCompressor().add_chunk(data)

    _roundtrip("legacy_deflate_ofb_roundtrip", "1.0.0", zlib.compress)
    _roundtrip("snappy_framed_ofb_roundtrip", "1.10.0", _snappy_framed)

    return {
        "version": "cloudbackup-prepare-self-test-v1",
        "build": get_build_info(tool, repo_root),
        "summary": summarize_checks(checks),
        "checks": checks,
        "duration_seconds": round(time.time() - started, 3),
        "fingerprint_sha256": hashlib.sha256(payload).hexdigest(),
    }


def version_result(*, tool: str, repo_root: Path) -> Dict[str, Any]:
    return {
        "version": "cloudbackup-prepare-version-v1",
        "build": get_build_info(tool, repo_root),
    }


def write_json_private_default(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    if os.name != "nt":
        try:
            path.chmod(0o600)
        except OSError:
            pass

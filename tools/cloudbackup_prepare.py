#!/usr/bin/env python3
"""
cloudbackup_prepare.py
======================
Turn a CloudBackup agent artifact back into the original backup file:
undo the agent's encryption and/or compression in the order the agent
version used to apply them.

Usage:
    python tools/cloudbackup_prepare.py -i backup.z -o backup.sql -e <key>
    python tools/cloudbackup_prepare.py -i backup.sz -o backup.sql -e <key> --agent-version 1.8.2
    python tools/cloudbackup_prepare.py -i backup.bin -o backup.sql -e <key> --agent-version 2.1.0 -y -z
"""

import argparse
import contextlib
import json
import os
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cli_runtime import (
    doctor_checks_common,
    ensure_api_path,
    resolve_repo_root,
    self_test_core,
    version_result,
    write_json_private_default,
)

REPO_ROOT = resolve_repo_root(__file__)
ensure_api_path(REPO_ROOT)

from prepare_contracts import DEFAULT_CHUNK_SIZE, PrepareRequest  # noqa: E402
from prepare_errors import (  # noqa: E402
    InputFileError,
    OutputFileError,
    PrepareError,
    error_code_from_exception,
)
from prepare_pipeline import prepare_stream  # noqa: E402
from prepare_policy import resolve_layout  # noqa: E402

CLI_SCHEMA_VERSION = "cloudbackup.prepare.cli.v1"
TOOL_NAME = "cloudbackup_prepare"
ENV_ENCRYPTION_KEY = "CLOUDBACKUP_ENCRYPTION_KEY"
ENV_AGENT_VERSION = "CLOUDBACKUP_AGENT_VERSION"


def _note(message: str) -> None:
    print(f"[prepare] {message}", file=sys.stderr)


def _tmp_output_path(target_path: Path) -> Path:
    return target_path.parent / f"{target_path.name}.tmp.cloudbackup"


def _cleanup_tmp(path: Path) -> None:
    try:
        if path.exists():
            path.unlink()
    except OSError:
        pass


def _harden_file_mode(path: Path) -> None:
    if os.name != "nt":
        try:
            path.chmod(0o600)
        except OSError:
            pass


def _emit_cli_json(payload: Dict, enabled: bool, json_file: Optional[Path]) -> None:
    if json_file:
        write_json_private_default(json_file, payload)
    if enabled:
        print(json.dumps(payload, indent=2))


def validate_input_file(path: Path) -> None:
    if not path.exists():
        raise InputFileError("Backup file doesn't exist", path=str(path))
    if path.is_dir():
        raise InputFileError(f"Expecting a file but {path} is a directory", path=str(path))


def validate_output_file(path: Path) -> None:
    if path.exists():
        raise OutputFileError(f"Output file exists {path}. Please remove it", path=str(path))
    if not path.parent.is_dir():
        raise OutputFileError(f"Output directory {path.parent} doesn't exist", path=str(path))


def prepare_backup_file(
    backup_file: Path,
    output_file: Path,
    request: PrepareRequest,
    notify: Callable[[str], None] = _note,
) -> Dict:
    """Validate paths, decode `backup_file` into `output_file`, return a result dict.

    The decoded bytes go to a sibling temp file that only replaces
    `output_file` once the whole stream decoded cleanly.
    """
    validate_input_file(backup_file)
    validate_output_file(output_file)

    layout = resolve_layout(request.agent_version, request.decrypt, request.decompress, request.keyed)
    for message in layout.notes:
        notify(message)

    tmp_path = _tmp_output_path(output_file)
    _cleanup_tmp(tmp_path)
    try:
        with backup_file.open("rb") as in_f, tmp_path.open("xb") as out_f:
            result = prepare_stream(in_f, out_f, request, layout=layout, name=str(backup_file))
        _harden_file_mode(tmp_path)
        os.replace(tmp_path, output_file)
    except Exception:
        _cleanup_tmp(tmp_path)
        raise

    payload = result.to_dict()
    payload["backup_file"] = str(backup_file)
    payload["output_file"] = str(output_file)
    return payload


def _base_payload(command: str, ok: bool, backup_file: Optional[Path], output_file: Optional[Path]) -> Dict:
    return {
        "schema_version": CLI_SCHEMA_VERSION,
        "tool": TOOL_NAME,
        "command": command,
        "ok": bool(ok),
        "exit_code": 0 if ok else 1,
        "backup_file": str(backup_file) if backup_file is not None else None,
        "output_file": str(output_file) if output_file is not None else None,
    }


def _emit_runtime_payload(
    *,
    command: str,
    result: Dict,
    ok: bool,
    backup_file: Optional[Path],
    output_file: Optional[Path],
    enabled_json: bool,
    json_file: Optional[Path],
) -> None:
    payload = _base_payload(command, ok, backup_file, output_file)
    payload["result"] = result
    _emit_cli_json(payload, enabled=enabled_json, json_file=json_file)
    if not enabled_json:
        if command == "version":
            build = result.get("build", {})
            print(
                f"cloudbackup-prepare {build.get('prepare_version', 'dev')} "
                f"({build.get('system', '?')}/{build.get('machine', '?')})",
                file=sys.stderr,
            )
        elif command in {"self_test", "doctor"}:
            summary = result.get("summary", {})
            print(
                f"[{command}] ok={summary.get('ok')} "
                f"passed={summary.get('checks_passed')}/{summary.get('checks_total')} "
                f"errors={summary.get('errors')} warnings={summary.get('warnings')}"
            )
            for check in result.get("checks", []):
                if not check.get("ok"):
                    detail = check.get("detail") or check.get("code") or ""
                    print(f"  [{check.get('severity')}] {check.get('name')} {detail}".rstrip())


def _build_parser(add_help: bool = True) -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Decrypt and decompress a CloudBackup agent backup file.",
        add_help=add_help,
    )
    ap.add_argument("-v", "--version", action="store_true", help="Output version information and exit")
    ap.add_argument("--self-test", action="store_true", help=argparse.SUPPRESS)
    ap.add_argument("--doctor", action="store_true", help=argparse.SUPPRESS)
    ap.add_argument("-i", "--backup-file", default=None, help="CloudBackup file path")
    ap.add_argument("-o", "--output-file", default=None, help="File to save the decrypted and uncompressed backup to")
    ap.add_argument(
        "-e",
        "--encryption-key",
        default=os.environ.get(ENV_ENCRYPTION_KEY, ""),
        help=f"Base64url encryption key to decrypt the backup file (env: {ENV_ENCRYPTION_KEY})",
    )
    ap.add_argument(
        "--agent-version",
        default=os.environ.get(ENV_AGENT_VERSION, ""),
        help=f"Agent version used to take the backup; empty means <= 1.2.0 (env: {ENV_AGENT_VERSION})",
    )
    ap.add_argument(
        "-z",
        "--decompress",
        action="store_true",
        help="Agent versions > 1.10.0 only: the backup is snappy-compressed",
    )
    ap.add_argument(
        "-y",
        "--decrypt",
        action="store_true",
        help="Agent versions > 1.10.0 only: the backup is encrypted (requires -e)",
    )
    ap.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Copy buffer size in bytes.",
    )
    ap.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON to stdout (human logs go to stderr).",
    )
    ap.add_argument(
        "--json-file",
        default=None,
        help="Optional path to write the same machine-readable JSON result.",
    )
    ap.add_argument("--unsafe-perms-ok", action="store_true", help=argparse.SUPPRESS)
    return ap


def _path_or_none(value: Optional[str]) -> Optional[Path]:
    return Path(value).resolve() if value else None


def _try_runtime_command(argv: Optional[List[str]]) -> bool:
    args, _unknown = _build_parser(add_help=False).parse_known_args(argv)

    if not (args.version or args.self_test or args.doctor):
        return False

    backup_file = _path_or_none(args.backup_file)
    output_file = _path_or_none(args.output_file)
    json_file = _path_or_none(args.json_file)

    if args.version:
        result = version_result(tool=TOOL_NAME, repo_root=REPO_ROOT)
        _emit_runtime_payload(
            command="version",
            result=result,
            ok=True,
            backup_file=backup_file,
            output_file=output_file,
            enabled_json=args.json,
            json_file=json_file,
        )
        return True

    if args.self_test:
        result = self_test_core(tool=TOOL_NAME, repo_root=REPO_ROOT)
        ok = bool(result.get("summary", {}).get("ok"))
        _emit_runtime_payload(
            command="self_test",
            result=result,
            ok=ok,
            backup_file=backup_file,
            output_file=output_file,
            enabled_json=args.json,
            json_file=json_file,
        )
        if not ok:
            raise SystemExit(1)
        return True

    extra_checks: List[Dict] = [
        {"name": "chunk_size_arg", "ok": args.chunk_size >= 1, "severity": "error", "value": args.chunk_size},
    ]
    result = doctor_checks_common(
        tool=TOOL_NAME,
        repo_root=REPO_ROOT,
        backup_file=backup_file,
        output_file=output_file,
        encryption_key=args.encryption_key,
        agent_version=args.agent_version,
        decrypt=args.decrypt,
        decompress=args.decompress,
        unsafe_perms_ok=args.unsafe_perms_ok,
        extra_checks=extra_checks,
    )
    ok = bool(result.get("summary", {}).get("ok"))
    _emit_runtime_payload(
        command="doctor",
        result=result,
        ok=ok,
        backup_file=backup_file,
        output_file=output_file,
        enabled_json=args.json,
        json_file=json_file,
    )
    if not ok:
        raise SystemExit(1)
    return True


def main(argv: Optional[List[str]] = None) -> None:
    if _try_runtime_command(argv):
        return
    ap = _build_parser()
    args = ap.parse_args(argv)
    if not args.backup_file:
        ap.error("Backup file is mandatory. Use -i option to pass it")
    if not args.output_file:
        ap.error("Output file is mandatory. Use -o option to pass it")

    backup_file = Path(args.backup_file).resolve()
    output_file = Path(args.output_file).resolve()
    json_file = _path_or_none(args.json_file)

    try:
        request = PrepareRequest(
            agent_version=args.agent_version,
            encryption_key=args.encryption_key,
            decrypt=args.decrypt,
            decompress=args.decompress,
            chunk_size=args.chunk_size,
        )
        if args.json:
            with contextlib.redirect_stdout(sys.stderr):
                result = prepare_backup_file(backup_file, output_file, request)
        else:
            result = prepare_backup_file(backup_file, output_file, request)
    except (PrepareError, OSError, ValueError) as exc:
        if args.json or json_file:
            payload = _base_payload("prepare", False, backup_file, output_file)
            if isinstance(exc, PrepareError):
                payload["error"] = exc.to_dict()
            else:
                payload["error"] = {
                    "code": error_code_from_exception(exc),
                    "message": str(exc),
                    "error_type": exc.__class__.__name__,
                }
            _emit_cli_json(payload, enabled=args.json, json_file=json_file)
        print(str(exc), file=sys.stderr)
        raise SystemExit(1)

    payload = _base_payload("prepare", True, backup_file, output_file)
    payload["result"] = result
    _emit_cli_json(payload, enabled=args.json, json_file=json_file)
    print("Process completed successfully", file=sys.stderr)


if __name__ == "__main__":
    main()

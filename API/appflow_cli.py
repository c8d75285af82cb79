#!/usr/bin/python3
import argparse
import json
import os
import subprocess
import sys
import tempfile
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path

import requests

_ENV_REQUIRED = ["APPFLOW_TOKEN", "APPFLOW_APP_ID"]
_ENV_OPTIONAL = [
    "APPFLOW_API_URL",
    "APPFLOW_HTTP_TIMEOUT",
    "APPFLOW_SSL_CAFILE",
    "APPFLOW_SSL_CERTFILE",
    "APPFLOW_SSL_KEYFILE",
    "APPFLOW_HTTP_PROXY",
]


def _json_default(obj):
    # Best-effort serialization for nested structures returned by the API.
    try:
        return obj.as_dict()
    except Exception:
        try:
            return dict(vars(obj))
        except Exception:
            return str(obj)


def _find_dotenv_path(start: Path | None = None) -> Path | None:
    """
    Find a `.env` file by walking up from `start` (default: CWD).

    This mirrors `python-dotenv`'s "search parents" behavior and is used by `appflow doctor`
    to report which file the client would pick up.
    """
    cur = (start or Path.cwd()).resolve()
    for p in [cur, *cur.parents]:
        cand = p / ".env"
        if cand.is_file():
            return cand
    return None


def _cli_version() -> str:
    try:
        return pkg_version("appflow-client")
    except PackageNotFoundError:
        try:
            import appflow  # type: ignore

            v = getattr(appflow, "_VERSION", None)
            if v is not None:
                return str(v)
        except Exception:
            pass
        return "unknown"


def _atomic_write_text(path: Path, data: str, *, encoding: str = "utf-8") -> None:
    """
    Best-effort atomic file write.

    Write to a temp file in the destination directory, then replace the final path. This avoids
    leaving partially-written output files if the process is interrupted mid-write.
    """
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        newline="\n",
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_fh.name)
    try:
        with tmp_fh:
            tmp_fh.write(data)
            tmp_fh.flush()
            try:
                os.fsync(tmp_fh.fileno())
            except OSError:
                # Some filesystems may not support fsync; atomic replace still helps.
                pass
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_json(path: Path | None, payload, *, pretty: bool) -> None:
    if pretty:
        data = json.dumps(payload, indent=2, default=_json_default, sort_keys=True)
    else:
        data = json.dumps(payload, default=_json_default, sort_keys=True, separators=(",", ":"))
    if path is None:
        sys.stdout.write(data + "\n")
    else:
        _atomic_write_text(path, data + "\n", encoding="utf-8")


def _write_lines(path: Path | None, lines: list[str]) -> None:
    if path is None:
        out_fh = sys.stdout
        for line in lines:
            out_fh.write(str(line) + "\n")
        return
    data = "".join(f"{line}\n" for line in lines)
    _atomic_write_text(path, data, encoding="utf-8")


def _resolve_out_path(value: str) -> Path | None:
    if not value or value == "-":
        return None
    return Path(value)


def _resolve_cli_log_level(args) -> str | None:
    if getattr(args, "log_level", ""):
        return args.log_level
    verbose = getattr(args, "verbose", 0) or 0
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return None


def _redact(text) -> str:
    try:
        import appflow  # type: ignore
    except ImportError:
        return str(text)
    redactor = getattr(appflow, "redact_sensitive_text", None)
    return redactor(str(text)) if callable(redactor) else str(text)


def _request_error_detail(e: BaseException) -> str:
    """Rendered HTTP status, URL and body of the ApiRequestError behind ``e``, if any."""
    import appflow  # type: ignore

    seen = e
    while seen is not None and not isinstance(seen, appflow.ApiRequestError):
        seen = seen.__cause__
    if seen is None:
        return ""
    return _redact(appflow.format_request_error(seen))


def _git_head_commit(cwd: Path | None = None) -> str:
    proc = subprocess.run(
        ["git", "rev-parse", "HEAD"],
        cwd=str(cwd) if cwd else None,
        capture_output=True,
        text=True,
        check=True,
    )
    return proc.stdout.strip()


def _artifact_types_arg(values: list[str] | None) -> list[str]:
    out: list[str] = []
    for value in values or []:
        for part in str(value).split(","):
            token = part.strip().lower()
            if token and token not in out:
                out.append(token)
    return out


def _artifact_file_name(args, artifact_type: str, sanitize) -> str:
    if getattr(args, "build_file_name", ""):
        sys.stderr.write(
            "warning: --build-file-name is deprecated; use --ipa-name, --apk-name or --<artifact>-name\n"
        )
        return sanitize(args.build_file_name)
    return sanitize(getattr(args, f"{artifact_type.lower()}_name", "") or "")


def _progress_printer(label: str):
    def report(loaded: int, total: int) -> None:
        if total:
            sys.stderr.write(f"\r{label}: {loaded}/{total} bytes")
        else:
            sys.stderr.write(f"\r{label}: {loaded} bytes")
        sys.stderr.flush()

    return report


def _build_summary_lines(app_id: str, build: dict, artifact_types: list[str]) -> list[str]:
    commit = build.get("commit") or {}
    stack = build.get("stack") or {}
    rows = [
        ("App ID", app_id),
        ("Build ID", str(build.get("job_id", ""))),
        ("Commit", f"{str(commit.get('sha', ''))[:6]} {commit.get('note', '')}".strip()),
        ("Target Platform", stack.get("friendly_name", "")),
        ("Build Type", build.get("build_type", "")),
        ("Artifact Type(s)", ",".join(artifact_types).upper() if artifact_types else "all available"),
        ("Security Profile", build.get("profile_tag") or "not set"),
        ("Environment", build.get("environment_name") or "not set"),
        ("Native Config", build.get("native_config_name") or "not set"),
        ("Destination", build.get("distribution_credential_name") or "not set"),
    ]
    width = max(len(k) for k, _ in rows)
    return [f"{k.rjust(width)}: {v}" for k, v in rows]


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--app-id",
        default="",
        help="Appflow app id (default: env APPFLOW_APP_ID)",
    )
    p.add_argument("--out", default="", help="Output path (default: stdout)")
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable; maps to INFO/DEBUG)",
    )
    p.add_argument(
        "--log-level",
        default="",
        help="Set log level (DEBUG/INFO/WARNING/ERROR/CRITICAL). Overrides -v/--verbose.",
    )
    p.add_argument(
        "--http-timeout",
        default="",
        help="HTTP timeouts in seconds: 'read' or 'connect,read' (default: env APPFLOW_HTTP_TIMEOUT)",
    )


def _add_artifact_name_args(p: argparse.ArgumentParser) -> None:
    for artifact_type in ("ipa", "dsym", "apk", "aab"):
        p.add_argument(
            f"--{artifact_type}-name",
            default="",
            help=f"The name for the downloaded {artifact_type} file",
        )
    p.add_argument(
        "--build-file-name",
        default="",
        help="Deprecated: the name for the downloaded build file",
    )
    p.add_argument(
        "--artifact-type",
        action="append",
        default=None,
        help="Artifact type to download (repeatable or comma-separated; default: all available)",
    )
    p.add_argument("--out-dir", default=".", help="Directory for downloaded artifacts (default: CWD)")
    p.add_argument("--progress", action="store_true", help="Report download progress on stderr")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Small CLI for Appflow package builds.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {_cli_version()}")
    sub = p.add_subparsers(dest="cmd", required=True)

    doctor = sub.add_parser("doctor", help="Environment/auth sanity checks (non-destructive)")
    doctor.add_argument(
        "--format",
        choices=["json", "text"],
        default="json",
        help="Output format (default: json)",
    )
    doctor.add_argument("--out", default="", help="Output path (default: stdout)")

    package = sub.add_parser("package", help="Package build commands")
    package_sub = package.add_subparsers(dest="package_cmd", required=True)

    build = package_sub.add_parser(
        "build",
        help="Create a package build, print its log while it runs, then download its artifacts",
    )
    build.add_argument("platform", help="The platform to package (android, ios)")
    build.add_argument("type", help="The build type (debug, release, development, ad-hoc, app-store, enterprise)")
    build.add_argument("--signing-certificate", default="", help="Signing certificate name")
    build.add_argument("--environment", default="", help="The group of environment variables exposed to the build")
    build.add_argument("--native-config", default="", help="The group of native config variables exposed to the build")
    build.add_argument("--destination", default="", help="App store destination for the build artifact")
    build.add_argument("--commit", default="", help="Commit sha (default: git rev-parse HEAD)")
    build.add_argument("--build-stack", default="", help="Target platform stack name")
    build.add_argument("--skip-download", action="store_true", help="Skip downloading build artifacts")
    build.add_argument(
        "--poll-interval-s",
        type=float,
        default=None,
        help="Seconds between build status polls (default: 5)",
    )
    _add_artifact_name_args(build)
    _add_common_args(build)

    get = package_sub.add_parser("get", help="Get a package build")
    get.add_argument("build_id", help="Build id")
    _add_common_args(get)

    ls = package_sub.add_parser("list", help="List package builds")
    ls.add_argument("--page-size", type=int, default=100, help="Page size (default: 100)")
    ls.add_argument("--max-pages", type=int, default=0, help="Stop after N pages (default: all)")
    ls.add_argument(
        "--format",
        choices=["json", "lines"],
        default="json",
        help="Output format (default: json)",
    )
    _add_common_args(ls)

    dl = package_sub.add_parser("download", help="Download artifacts of a finished package build")
    dl.add_argument("build_id", help="Build id")
    _add_artifact_name_args(dl)
    _add_common_args(dl)

    return p


def _open_builds(args):
    import appflow
    import appflow_builds

    level = _resolve_cli_log_level(args)
    if level and hasattr(appflow, "configure_logging"):
        appflow.configure_logging(level)

    config = appflow.Config.from_env()
    if getattr(args, "http_timeout", ""):
        config = appflow.Config(
            config.get_api_url(),
            ssl_config=config.load().get("ssl"),
            timeout=appflow.parse_http_timeout(args.http_timeout),
        )
    token = appflow.Session().get_user_token()
    client = appflow.Client(config)
    return appflow_builds.PackageBuilds(client, token)


def _resolve_app_id(args) -> str:
    app_id = (getattr(args, "app_id", "") or os.getenv("APPFLOW_APP_ID", "")).strip()
    if not app_id:
        raise ValueError("missing app id (use --app-id or set APPFLOW_APP_ID)")
    return app_id


def _download_artifacts(builds, app_id: str, build: dict, args) -> list[str]:
    import appflow_builds

    build_id = build.get("job_id")
    requested = _artifact_types_arg(args.artifact_type)
    if requested:
        artifact_types = requested
    else:
        artifact_types = [
            str(a.get("artifact_type", "")).lower()
            for a in (build.get("artifacts") or [])
            if isinstance(a, dict) and a.get("artifact_type")
        ]

    downloaded: list[str] = []
    errors: list[str] = []
    for artifact_type in artifact_types:
        try:
            file_name = _artifact_file_name(args, artifact_type, appflow_builds.sanitize_file_name)
            path = appflow_builds.download_artifact(
                builds,
                app_id,
                build_id,
                artifact_type,
                file_name=file_name,
                out_dir=args.out_dir,
                progress=_progress_printer(artifact_type) if args.progress else None,
            )
        except Exception as e:
            errors.append(str(e))
            continue
        if args.progress:
            sys.stderr.write("\n")
        sys.stderr.write(f"Artifact downloaded: {path}\n")
        downloaded.append(str(path))

    if errors:
        raise RuntimeError("There were issues downloading artifacts: " + "\n".join(errors))
    return downloaded


def _cmd_doctor(args) -> int:
    missing_required = [k for k in _ENV_REQUIRED if not os.getenv(k)]
    env_state = {}
    for k in _ENV_REQUIRED + _ENV_OPTIONAL:
        v = os.getenv(k)
        if k == "APPFLOW_TOKEN":
            env_state[k] = {"set": bool(v)}
        else:
            env_state[k] = {"set": bool(v), "value": (v if v else "")}

    ssl_missing: list[str] = []
    for k in ("APPFLOW_SSL_CAFILE", "APPFLOW_SSL_CERTFILE", "APPFLOW_SSL_KEYFILE"):
        for p in (os.getenv(k) or "").split(os.pathsep):
            if p.strip() and not Path(p.strip()).is_file():
                ssl_missing.append(p.strip())

    dotenv_path = _find_dotenv_path()
    payload = {
        "ok": not missing_required and not ssl_missing,
        "cwd": str(Path.cwd()),
        "dotenv": str(dotenv_path) if dotenv_path else "",
        "checks": {
            "env": {
                "missing_required": missing_required,
                "required": _ENV_REQUIRED,
                "optional": _ENV_OPTIONAL,
                "values": env_state,
            },
            "ssl": {"missing_files": ssl_missing},
        },
    }

    out_path = _resolve_out_path(args.out)
    if args.format == "json":
        _write_json(out_path, payload, pretty=True)
    else:
        lines = ["ok: true" if payload["ok"] else "ok: false"]
        if payload["dotenv"]:
            lines.append(f"dotenv: {payload['dotenv']}")
        if missing_required:
            lines.append("missing required env vars: " + ", ".join(missing_required))
        if ssl_missing:
            lines.append("missing ssl files: " + ", ".join(ssl_missing))
        _write_lines(out_path, lines)
    return 0 if payload["ok"] else 1


def _cmd_package_build(args, builds, app_id: str) -> int:
    import appflow_builds

    artifact_types = _artifact_types_arg(args.artifact_type)
    commit = args.commit or _git_head_commit()

    build = builds.create_package_build(
        app_id,
        args.platform,
        args.type,
        commit_sha=commit,
        stack_name=args.build_stack,
        profile_name=args.signing_certificate,
        environment_name=args.environment,
        native_config_name=args.native_config,
        distribution_credential_name=args.destination,
    )
    build_id = build.get("job_id")
    sys.stderr.write("Build created\n" + "\n".join(_build_summary_lines(app_id, build, artifact_types)) + "\n\n")

    poll_kwargs = {}
    if args.poll_interval_s is not None:
        poll_kwargs["poll_interval_s"] = max(args.poll_interval_s, 0.0)
    build = appflow_builds.tail_build_log(builds, app_id, build_id, out=sys.stderr, **poll_kwargs)
    if build.get("state") != "success":
        sys.stderr.write(f"Build {build.get('state')}\n")
        return 1

    downloaded: list[str] = []
    if not args.skip_download:
        downloaded = _download_artifacts(builds, app_id, build, args)

    _write_json(
        _resolve_out_path(args.out),
        {"build_id": build_id, "state": build.get("state"), "artifacts": downloaded},
        pretty=True,
    )
    return 0


def _cmd_package_list(args, builds, app_id: str) -> int:
    values: list[dict] = []
    for n, pending in enumerate(builds.list_package_builds(app_id, page_size=max(args.page_size, 1)), start=1):
        values.extend(pending.result().data)
        if args.max_pages and n >= args.max_pages:
            break

    out_path = _resolve_out_path(args.out)
    if args.format == "json":
        _write_json(out_path, values, pretty=True)
    else:
        lines = [
            "\t".join(
                [
                    str(item.get("job_id", "")),
                    str(item.get("platform", "")),
                    str(item.get("build_type", "")),
                    str(item.get("state", "")),
                    str(item.get("created", "")),
                ]
            )
            for item in values
        ]
        _write_lines(out_path, lines)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "doctor":
        return _cmd_doctor(args)

    try:
        app_id = _resolve_app_id(args)
    except ValueError as e:
        sys.stderr.write(f"{e}\n")
        return 2

    if args.package_cmd == "build":
        import appflow_builds

        try:
            appflow_builds.validate_build_options(
                args.platform,
                args.type,
                signing_certificate=args.signing_certificate,
                destination=args.destination,
                artifact_types=_artifact_types_arg(args.artifact_type),
            )
        except Exception as e:
            sys.stderr.write(f"{e}\n")
            return 2

    try:
        builds = _open_builds(args)
    except Exception as e:
        sys.stderr.write(f"failed to initialize client: {_redact(e)}\n")
        return 1

    cmd = f"package {args.package_cmd}"
    try:
        if args.package_cmd == "build":
            return _cmd_package_build(args, builds, app_id)

        if args.package_cmd == "get":
            _write_json(_resolve_out_path(args.out), builds.get_package_build(app_id, args.build_id), pretty=True)
            return 0

        if args.package_cmd == "list":
            return _cmd_package_list(args, builds, app_id)

        if args.package_cmd == "download":
            build = builds.get_package_build(app_id, args.build_id)
            if build.get("state") != "success":
                sys.stderr.write(f"build {args.build_id} is not finished successfully (state={build.get('state')})\n")
                return 1
            downloaded = _download_artifacts(builds, app_id, build, args)
            _write_json(_resolve_out_path(args.out), {"build_id": build.get("job_id"), "artifacts": downloaded}, pretty=True)
            return 0
    except subprocess.CalledProcessError as e:
        sys.stderr.write(f"{cmd} failed: unable to resolve commit (git exited {e.returncode}); pass --commit\n")
        return 1
    except requests.RequestException as e:
        sys.stderr.write(f"{cmd} failed: network error: {_redact(e)}\n")
        return 1
    except Exception as e:
        sys.stderr.write(f"{cmd} failed: {_redact(e)}\n")
        detail = _request_error_detail(e)
        if detail:
            sys.stderr.write(f"{detail}\n")
        return 1

    sys.stderr.write("unknown package command\n")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/python3
"""
Appflow package builds: create a build, follow it to completion while tailing its log,
and fetch the artifacts it produced.
"""
import logging
import os
import re
import sys
import tempfile
import time
from pathlib import Path

import requests

from appflow import (
    ApiRequestError,
    ArtifactNotFoundError,
    Client,
    ServiceError,
    ValidationError,
    create_fatal_api_format,
    create_request,
    download,
    is_list_response,
)

PLATFORMS = ("android", "ios")
ANDROID_BUILD_TYPES = ("debug", "release")
IOS_BUILD_TYPES = ("development", "ad-hoc", "app-store", "enterprise")
APP_STORE_COMPATIBLE_TYPES = ("release", "app-store", "enterprise")
BUILD_TYPES = ANDROID_BUILD_TYPES + IOS_BUILD_TYPES
ANDROID_ARTIFACT_TYPES = ("aab", "apk")
IOS_ARTIFACT_TYPES = ("ipa", "dsym")
ARTIFACT_TYPES = ANDROID_ARTIFACT_TYPES + IOS_ARTIFACT_TYPES

BUILD_TERMINAL_STATES = ("success", "failed", "canceled")
POLL_INTERVAL_S = 5.0
MAX_CONSECUTIVE_ERRORS = 3
CONCURRENCY_NOTICE = "Concurrency limit reached: build will start as soon as other builds finish."

# Failures worth another poll. Format/contract errors (FatalError) are not in here.
_RETRYABLE_POLL_ERRORS = (requests.RequestException, ApiRequestError, ServiceError)

_INVALID_FILE_NAME_RE = re.compile(r'[/\\?<>*|":\x00-\x1f]')
_DISPOSITION_UNSAFE_RE = re.compile(r'[/?<>*|"]')
_DEFAULT_DOWNLOAD_NAME = "output.bin"


def build_types_for(platform: str) -> tuple[str, ...]:
    return IOS_BUILD_TYPES if platform == "ios" else ANDROID_BUILD_TYPES


def artifact_types_for(platform: str) -> tuple[str, ...]:
    if platform == "android":
        return ANDROID_ARTIFACT_TYPES
    if platform == "ios":
        return IOS_ARTIFACT_TYPES
    raise ValidationError(f"Unsupported platform {platform}")


def validate_build_options(
    platform: str,
    build_type: str,
    *,
    signing_certificate: str = "",
    destination: str = "",
    artifact_types: list[str] | None = None,
) -> None:
    if platform not in PLATFORMS:
        raise ValidationError(f"Unsupported platform {platform} (expected one of: {', '.join(PLATFORMS)})")

    if build_type not in build_types_for(platform):
        raise ValidationError(
            f"Build type {build_type} incompatible for {platform} "
            f"(expected one of: {', '.join(build_types_for(platform))})"
        )

    # iOS builds cannot be signed without one.
    if platform == "ios" and not signing_certificate:
        raise ValidationError("A signing certificate is mandatory to build an iOS package")

    if destination and build_type not in APP_STORE_COMPATIBLE_TYPES:
        raise ValidationError(f"Build with type {build_type} cannot be deployed to App Store")

    if artifact_types:
        supported = artifact_types_for(platform)
        unsupported = [t for t in artifact_types if t.lower() not in supported]
        if unsupported:
            raise ValidationError(
                f"Unsupported artifact types for platform {platform}: {','.join(unsupported)}"
            )


def is_valid_file_name(name: str) -> bool:
    if not name or name in (".", "..") or len(name) > 255:
        return False
    return not _INVALID_FILE_NAME_RE.search(name)


def sanitize_file_name(value) -> str:
    if not value or not isinstance(value, str):
        return ""
    if not is_valid_file_name(value):
        raise ValidationError(f"{value} is not a valid file name")
    return value


def file_name_from_content_disposition(header: str | None) -> str:
    if not header or "=" not in header:
        return _DEFAULT_DOWNLOAD_NAME
    name = header.split("=", 1)[1].split(";", 1)[0].strip().strip("\"'")
    name = _DISPOSITION_UNSAFE_RE.sub("_", name)
    return name or _DEFAULT_DOWNLOAD_NAME


def build_trace(build: dict) -> str:
    job = build.get("job") if isinstance(build, dict) else None
    if isinstance(job, dict) and job.get("trace") is not None:
        return str(job["trace"])
    return str((build or {}).get("trace") or "")


class PackageBuilds:
    def __init__(self, client: Client, token: str):
        self.client = client
        self._token = token

    def _authed(self, method: str, path: str):
        return self.client.make(method, path).set("Authorization", f"Bearer {self._token}")

    def _do(self, action: str, req, *, require_object: bool = True) -> dict:
        try:
            res = self.client.do(req)
        except ApiRequestError as e:
            if e.status_code == 401:
                logging.error("Try logging out and back in again.")
            message = e.error_payload.get("message") or "Api Error"
            raise ServiceError(f"Unable to {action}: {message}", status_code=e.status_code) from e
        if require_object and not isinstance(res.data, dict):
            raise create_fatal_api_format(req, res)
        return res.data

    def create_package_build(
        self,
        app_id: str,
        platform: str,
        build_type: str,
        *,
        commit_sha: str = "",
        stack_name: str = "",
        profile_name: str = "",
        environment_name: str = "",
        native_config_name: str = "",
        distribution_credential_name: str = "",
    ) -> dict:
        payload = {
            "platform": platform,
            "build_type": build_type,
            "commit_sha": commit_sha or None,
            "stack_name": stack_name or None,
            "profile_name": profile_name or None,
            "environment_name": environment_name or None,
            "native_config_name": native_config_name or None,
            "distribution_credential_name": distribution_credential_name or None,
        }
        req = self._authed("POST", f"/apps/{app_id}/packages/verbose_post").send(
            {k: v for k, v in payload.items() if v is not None}
        )
        return self._do("create build", req)

    def get_package_build(self, app_id: str, build_id) -> dict:
        req = self._authed("GET", f"/apps/{app_id}/packages/{build_id}")
        return self._do(f"get build {build_id}", req)

    def get_download_url(self, app_id: str, build_id, artifact_type: str) -> dict:
        req = self._authed("GET", f"/apps/{app_id}/packages/{build_id}/download").query(
            {"artifact_type": artifact_type}
        )
        return self._do(f"get download URL for build {build_id}", req, require_object=False) or {}

    def list_package_builds(self, app_id: str, *, page_size: int = 100):
        return self.client.paginate(
            lambda: self._authed("GET", f"/apps/{app_id}/packages"),
            is_list_response,
            page_size=page_size,
        )


def tail_build_log(
    builds: PackageBuilds,
    app_id: str,
    build_id,
    *,
    out=None,
    poll_interval_s: float = POLL_INTERVAL_S,
    max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
    terminal_states=BUILD_TERMINAL_STATES,
) -> dict:
    """
    Poll a build until it reaches a terminal state, writing newly appended log text to ``out``.

    Up to ``max_consecutive_errors - 1`` failed fetches in a row are tolerated; the next one
    is re-raised. The last fetched build is returned whatever its terminal state is.
    """
    out = out if out is not None else sys.stdout
    build = None
    start = 0
    created_notice = False
    errors_encountered = 0

    while not (build and build.get("state") in terminal_states):
        time.sleep(poll_interval_s)
        try:
            build = builds.get_package_build(app_id, build_id)
        except _RETRYABLE_POLL_ERRORS as e:
            errors_encountered += 1
            logging.warning("Encountered error: %s while fetching build data retrying.", e)
            if errors_encountered >= max_consecutive_errors:
                logging.error("Encountered %d errors in a row. Job will now fail.", errors_encountered)
                raise
            continue

        errors_encountered = 0
        if build.get("state") == "created" and not created_notice:
            out.write(CONCURRENCY_NOTICE + "\n")
            created_notice = True

        trace = build_trace(build)
        if len(trace) > start:
            out.write(trace[start:])
            start = len(trace)
        out.flush()

    return build


def download_build(client: Client, url: str, file_name: str = "", out_dir: Path | str = ".", *, progress=None) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    resolved = {"name": file_name}

    def on_response(resp):
        if not resolved["name"]:
            headers = getattr(resp, "headers", None) or {}
            resolved["name"] = file_name_from_content_disposition(headers.get("Content-Disposition"))

    req = create_request(client.config, "GET", url, tls=client.tls)
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="wb",
        delete=False,
        dir=out_dir,
        prefix=".appflow-package-build.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_fh.name)
    try:
        download(req, tmp_fh, progress=progress, on_response=on_response, session=client.session)
        dest = out_dir / (resolved["name"] or _DEFAULT_DOWNLOAD_NAME)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return dest


def download_artifact(
    builds: PackageBuilds,
    app_id: str,
    build_id,
    artifact_type: str,
    *,
    file_name: str = "",
    out_dir: Path | str = ".",
    progress=None,
) -> Path:
    payload = builds.get_download_url(app_id, build_id, artifact_type.upper())
    url = payload.get("url") if isinstance(payload, dict) else None
    if not url:
        raise ArtifactNotFoundError(artifact_type)
    return download_build(builds.client, url, file_name, out_dir, progress=progress)

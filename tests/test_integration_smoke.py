import os
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import appflow  # noqa: E402
import appflow_builds  # noqa: E402


def test_integration_smoke_list_package_builds():
    """
    Opt-in integration smoke test.

    Skipped by default so CI and casual contributors don't need Appflow credentials.
    """
    if os.getenv("APPFLOW_INTEGRATION") != "1":
        pytest.skip("set APPFLOW_INTEGRATION=1 to enable integration smoke tests")

    required = ["APPFLOW_TOKEN", "APPFLOW_APP_ID"]
    missing = [k for k in required if not os.getenv(k)]
    if missing:
        pytest.skip(f"missing required env vars: {', '.join(missing)}")

    client = appflow.Client(appflow.Config.from_env())
    builds = appflow_builds.PackageBuilds(client, appflow.Session().get_user_token())

    first = next(builds.list_package_builds(os.environ["APPFLOW_APP_ID"], page_size=5)).result()

    assert appflow.is_list_response(first)
    assert first.meta.status == 200

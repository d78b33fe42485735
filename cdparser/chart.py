"""Download a Helm chart and count the FinOps resources in its templates."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Dict, Tuple

from square.dtypes import K8sConfig

import cdparser.annotations
import cdparser.archive
import cdparser.getter
import cdparser.k8s
from cdparser.models import ChartInfo, ErrorKind, GetOptions

# Convenience.
logit = logging.getLogger("app")


async def run_async(fun, *args):
    """Run the blocking `fun` in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fun, *args)


async def get_options(
    k8sconfig: K8sConfig, info: ChartInfo | None
) -> Tuple[GetOptions | None, ErrorKind | None]:
    """Return the download options for `info` with the password resolved."""
    if info is None:
        logit.error("chart infos cannot be empty")
        return None, ErrorKind.REFERENCE_INVALID

    password, username = "", ""
    if info.credentials is not None:
        sel = info.credentials.passwordRef
        password, err = await cdparser.k8s.get_secret_value(k8sconfig, sel)
        if err:
            logit.error(f"failed to get secret {sel.namespace}/{sel.name}")
            return None, ErrorKind.SECRET_UNAVAILABLE
        username = info.credentials.username

    opts = GetOptions(
        uri=info.url,
        repo=info.repo,
        version=info.version,
        insecureSkipVerifyTLS=info.insecureSkipVerifyTLS,
        username=username,
        password=password,
    )
    return opts, None


def find_chart_root(work_dir: Path, name: str = "") -> Path:
    """Return the folder with the `Chart.yaml` of the chart extracted to `work_dir`.

    Chart archives usually contain a single top level folder named after the
    chart. Prefer the one called `name` if there are several.

    """
    if (work_dir / "Chart.yaml").is_file():
        return work_dir

    candidates = sorted(_.parent for _ in work_dir.glob("*/Chart.yaml"))
    for path in candidates:
        if path.name == name:
            return path
    return candidates[0] if len(candidates) > 0 else work_dir


async def run(
    opts: GetOptions | None, work_dir: Path, annotation_key: str
) -> Tuple[Dict[str, int], ErrorKind | None]:
    """Download and unpack the chart into `work_dir` and count its FinOps resources.

    The caller owns `work_dir` and must remove it afterwards.

    """
    tgz, err = await cdparser.getter.get(opts)
    if err:
        return {}, err

    # Unpacking and walking the chart block on disk I/O.
    err = await run_async(cdparser.archive.extract, tgz, work_dir)
    if err:
        return {}, err

    chart_root = find_chart_root(work_dir, opts.repo if opts else "")
    return await run_async(
        cdparser.annotations.process_templates, chart_root, annotation_key
    )


def cleanup_directory(path: Path) -> bool:
    """Remove `path` and all its content. Do nothing if it does not exist."""
    if not path.exists():
        return False

    logit.debug(f"Cleaning up directory: {path}")
    try:
        shutil.rmtree(path)
    except OSError as err:
        logit.error("error during cleanup", {"path": str(path), "reason": str(err)})
        return True
    logit.debug("Cleanup completed successfully")
    return False

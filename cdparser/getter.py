"""Download Helm charts.

A chart reference is resolved with one of three strategies, selected by the
shape of its URI:

* `oci://registry/path/chart` pulls the chart from an OCI registry.
* `https://host/path/chart-1.0.0.tgz` downloads the tarball directly.
* Everything else is a classic Helm repository: download its `index.yaml`,
  find the entry for the chart and version, and download the tarball.

"""

import asyncio
import logging
import tempfile
from enum import Enum
from pathlib import Path
from typing import Tuple
from urllib.parse import urlparse

import httpx
import oras.client
import pydantic
import yaml

from cdparser.models import ErrorKind, GetOptions, IndexEntry, RepositoryIndex

# Convenience.
logit = logging.getLogger("app")

OCI_SCHEME = "oci://"
TGZ_SUFFIXES = (".tgz", ".tar.gz")

# Charts are small but some registries are slow.
DOWNLOAD_TIMEOUT = httpx.Timeout(60.0)

# The first two bytes of every gzip stream.
GZIP_MAGIC = b"\x1f\x8b"


class Strategy(Enum):
    OCI = "oci"
    TGZ = "tgz"
    REPO = "repo"


def is_oci(uri: str) -> bool:
    return uri.startswith(OCI_SCHEME)


def is_tgz(uri: str) -> bool:
    path = urlparse(uri).path
    return path.endswith(TGZ_SUFFIXES)


def classify(uri: str) -> Strategy:
    """Return the download strategy for `uri`."""
    if is_oci(uri):
        return Strategy.OCI
    if is_tgz(uri):
        return Strategy.TGZ
    return Strategy.REPO


# ----------------------------------------------------------------------
# HTTP Downloads.
# ----------------------------------------------------------------------


async def fetch(opts: GetOptions, url: str) -> Tuple[bytes, ErrorKind | None]:
    """Return the body of a GET request to `url`.

    Honour the TLS and basic auth settings in `opts`.

    """
    auth = (opts.username, opts.password) if opts.username else None
    try:
        async with httpx.AsyncClient(
            verify=not opts.insecureSkipVerifyTLS,
            auth=auth,
            follow_redirects=True,
            timeout=DOWNLOAD_TIMEOUT,
        ) as client:
            ret = await client.get(url)
    except httpx.HTTPError as err:
        logit.error("download failed", {"url": url, "reason": str(err)})
        return b"", ErrorKind.TRANSPORT_FAILURE

    if not ret.is_success:
        logit.error("download failed", {"url": url, "status": ret.status_code})
        return b"", ErrorKind.TRANSPORT_FAILURE

    logit.debug(f"GET {ret.status_code} {url} ({len(ret.content)} bytes)")
    return ret.content, None


async def get_tgz(opts: GetOptions) -> Tuple[bytes, ErrorKind | None]:
    """Download a chart tarball from a plain URL."""
    return await fetch(opts, opts.uri)


# ----------------------------------------------------------------------
# Helm Repositories.
# ----------------------------------------------------------------------


def parse_index(text: str) -> Tuple[RepositoryIndex, ErrorKind | None]:
    """Parse the content of a Helm repository `index.yaml`."""
    try:
        data = yaml.safe_load(text)
        index = RepositoryIndex.model_validate(data or {})
    except (yaml.YAMLError, pydantic.ValidationError) as err:
        logit.error("corrupt repository index", {"reason": str(err)})
        return RepositoryIndex(), ErrorKind.MALFORMED_INDEX
    return index, None


def find_entry(
    index: RepositoryIndex, name: str, version: str
) -> Tuple[IndexEntry, ErrorKind | None]:
    """Return the first `name` entry in `index` whose `appVersion` is `version`."""
    for entry in index.entries.get(name, []):
        if entry.appVersion == version and len(entry.urls) > 0:
            return entry, None

    logit.error("chart not found in index", {"repo": name, "version": version})
    return IndexEntry(), ErrorKind.ENTRY_NOT_FOUND


def chart_url(base: str, entry: IndexEntry) -> str:
    """Return the download URL for the chart `entry` of repository `base`.

    Most repositories use URLs relative to the index but some use absolute ones.

    """
    url = entry.urls[0]
    if urlparse(url).scheme != "":
        return url
    return f"{base.rstrip('/')}/{url.lstrip('/')}"


async def get_repo(opts: GetOptions) -> Tuple[bytes, ErrorKind | None]:
    """Download a chart from a classic Helm repository."""
    if opts.repo == "" or opts.version == "":
        logit.error("repository charts need a name and version", {"uri": opts.uri})
        return b"", ErrorKind.REFERENCE_INVALID

    base = opts.uri.rstrip("/")
    text, err = await fetch(opts, f"{base}/index.yaml")
    if err:
        return b"", err

    index, err = parse_index(text.decode("utf8", errors="replace"))
    if err:
        return b"", err

    entry, err = find_entry(index, opts.repo, opts.version)
    if err:
        return b"", err

    return await fetch(opts, chart_url(base, entry))


# ----------------------------------------------------------------------
# OCI Registries.
# ----------------------------------------------------------------------


def oci_target(opts: GetOptions) -> str:
    """Return the ORAS target, eg `registry-1.docker.io/bitnamicharts/redis:18.0.1`."""
    target = opts.uri.removeprefix(OCI_SCHEME).rstrip("/")
    return f"{target}:{opts.version}" if opts.version else target


def _pull_oci(opts: GetOptions) -> Tuple[bytes, ErrorKind | None]:
    """Pull the chart with ORAS and return the tarball layer."""
    target = oci_target(opts)
    tls_verify = not opts.insecureSkipVerifyTLS

    # ORAS prompts on stdin for a missing password.
    if opts.username and opts.password == "":
        logit.error("OCI registry password must not be empty", {"target": target})
        return b"", ErrorKind.SECRET_UNAVAILABLE

    client = oras.client.OrasClient(tls_verify=tls_verify)

    with tempfile.TemporaryDirectory(prefix="cdparser-oci-") as outdir:
        try:
            if opts.username:
                hostname = target.split("/", 1)[0]
                logit.info(f"Using authentication for OCI registry {hostname}")
                client.login(
                    hostname=hostname,
                    username=opts.username,
                    password=opts.password,
                    tls_verify=tls_verify,
                )
            files = client.pull(target=target, outdir=outdir)
        except Exception as err:
            # ORAS does not have a common exception base class.
            logit.error("OCI pull failed", {"target": target, "reason": str(err)})
            return b"", ErrorKind.TRANSPORT_FAILURE

        logit.debug(f"Downloaded OCI layers: {files}")
        for fname in map(Path, files):
            data = fname.read_bytes()
            if data.startswith(GZIP_MAGIC):
                return data, None

    logit.error("OCI artifact does not contain a chart", {"target": target})
    return b"", ErrorKind.TRANSPORT_FAILURE


async def get_oci(opts: GetOptions) -> Tuple[bytes, ErrorKind | None]:
    """Pull a chart from an OCI registry."""
    # ORAS is synchronous. Do not block the event loop while it downloads.
    return await asyncio.to_thread(_pull_oci, opts)


# ----------------------------------------------------------------------
# Entry point.
# ----------------------------------------------------------------------


async def get(opts: GetOptions | None) -> Tuple[bytes, ErrorKind | None]:
    """Return the chart tarball that `opts` points to."""
    if opts is None or opts.uri.strip() == "":
        logit.error("chart reference must not be empty")
        return b"", ErrorKind.REFERENCE_INVALID

    strategy = classify(opts.uri)
    logit.info(f"Downloading chart {opts.uri} ({strategy.value})")
    if strategy == Strategy.OCI:
        return await get_oci(opts)
    if strategy == Strategy.TGZ:
        return await get_tgz(opts)
    return await get_repo(opts)

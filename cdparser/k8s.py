import asyncio
import base64
import binascii
import json
import logging
import ssl
from pathlib import Path
from typing import Dict, List, Tuple
from urllib.parse import urlparse

import httpx
import square.k8s
import tenacity as tc
from square.dtypes import ConnectionParameters, K8sConfig

from cdparser.models import DatabaseCredentials, Reference, SecretKeySelector

# Define the exceptions we want to retry on.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, KeyError, asyncio.TimeoutError)

# API group that contains the compositions of all CompositionDefinitions.
COMPOSITION_GROUP = "composition.krateo.io"


# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("app.k8s")


def _on_backoff(retry_state: tc.RetryCallState):
    """Log a warning on each retry."""
    attempt = retry_state.attempt_number
    k8sconfig, method, url = retry_state.args[:3]
    path = urlparse(url).path

    logit.warning(f"Back off {attempt} - {k8sconfig.name} - {method} {path}.")


async def _mysleep(delay: float):
    """This trivial function exists to mock out the `sleep` call during tests."""
    await asyncio.sleep(delay)


@tc.retry(
    stop=(tc.stop_after_delay(300) | tc.stop_after_attempt(8)),
    wait=tc.wait_exponential(multiplier=1, min=0, max=20) + tc.wait_random(-5, 5),
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS),
    before_sleep=_on_backoff,
    reraise=True,
    sleep=_mysleep,
)
async def _call(k8sconfig: K8sConfig, method: str, url: str) -> httpx.Response:
    return await k8sconfig.client.request(method, url)


async def request(k8sconfig: K8sConfig, method: str, url: str) -> Tuple[dict, int, bool]:
    """Return response of web request made with the K8s client.

    Inputs:
        k8sconfig: K8sConfig
            Contains the HttpX client with the correct K8s certificates.
        url: str
            Eg `/api/v1/namespaces`.

    Returns:
        (dict, int, bool): the JSON response and the HTTP status code.

    """
    # Make the HTTP request via our backoff/retry handler.
    try:
        ret = await _call(k8sconfig, method, url)
    except WEB_EXCEPTIONS as err:
        logit.error(f"Giving up - {k8sconfig.name} - {err} - {method} {url}")
        return ({}, -1, True)

    # Decode the JSON response and abort if that is impossible.
    try:
        response = json.loads(ret.text)
    except json.decoder.JSONDecodeError as err:
        msg = (
            f"JSON error - {k8sconfig.name} - "
            f"{err.msg} in line {err.lineno} column {err.colno}",
            "-" * 80 + "\n" + err.doc + "\n" + "-" * 80,
        )
        logit.error(str.join("\n", msg))
        return ({}, ret.status_code, True)

    logit.debug(f"{method} {ret.status_code} {ret.url}")
    return (response, ret.status_code, False)


async def get(k8sconfig: K8sConfig, url: str) -> Tuple[dict, bool]:
    """Make GET requests to K8s (see `request`)."""
    resp, code, err = await request(k8sconfig, "GET", url)
    if err or code != 200:
        logit.error(f"{code} - GET - {url} - {resp}")
        return (resp, True)
    return (resp, False)


def create_cluster_config(kubeconf: Path, context: str) -> Tuple[K8sConfig, bool]:
    """Return the K8s config from `kubeconf` or the Pod's service account."""
    # Parse Kubeconfig file.
    cfg, err = square.k8s.load_auto_config(kubeconf, context)
    if err:
        return K8sConfig(), True

    # Create HTTPX client.
    params = ConnectionParameters(read=600, write=600, pool=600)
    cfg, err = square.k8s.create_httpx_client(cfg, params)
    if err:
        return K8sConfig(), True

    # Set the base URL to the K8s API server for convenience.
    cfg.client.base_url = cfg.url

    return cfg, False


# ----------------------------------------------------------------------
# Resource Access.
# ----------------------------------------------------------------------


def split_api_version(api_version: str) -> Tuple[str, str]:
    """Return group and version, eg `apps/v1` -> (`apps`, `v1`) and `v1` -> (``, `v1`)."""
    group, _, version = api_version.rpartition("/")
    return group, version


def resource_path(ref: Reference) -> str:
    """Return the K8s API path to the resource `ref`."""
    group, version = split_api_version(ref.apiVersion)
    prefix = f"/apis/{group}/{version}" if group else f"/api/{version}"
    if ref.namespace:
        prefix = f"{prefix}/namespaces/{ref.namespace}"
    return f"{prefix}/{ref.resource}/{ref.name}"


async def get_obj(k8sconfig: K8sConfig, ref: Reference) -> Tuple[dict, bool]:
    """Return the manifest of the K8s resource `ref`."""
    manifest, err = await get(k8sconfig, resource_path(ref))
    if err:
        logit.error(
            f"unable to retrieve resource {ref.resource} with name {ref.name} "
            f"in namespace {ref.namespace}, with apiVersion {ref.apiVersion}"
        )
        return {}, True
    return manifest, False


async def get_secret(
    k8sconfig: K8sConfig, sel: SecretKeySelector
) -> Tuple[Dict[str, str], bool]:
    """Return the decoded `data` of the Secret that `sel` references."""
    ref = Reference(
        apiVersion="v1",
        kind="Secret",
        resource="secrets",
        name=sel.name,
        namespace=sel.namespace,
    )
    manifest, err = await get_obj(k8sconfig, ref)
    if err:
        return {}, True

    try:
        data = {
            k: base64.b64decode(v).decode("utf8")
            for k, v in manifest.get("data", {}).items()
        }
    except (binascii.Error, UnicodeDecodeError):
        logit.error(f"corrupt data in secret {sel.namespace}/{sel.name}")
        return {}, True
    return data, False


async def get_secret_value(
    k8sconfig: K8sConfig, sel: SecretKeySelector
) -> Tuple[str, bool]:
    """Return the value of key `sel.key` in the Secret that `sel` references."""
    data, err = await get_secret(k8sconfig, sel)
    if err:
        return "", True

    try:
        return data[sel.key], False
    except KeyError:
        logit.error(f"secret {sel.namespace}/{sel.name} has no key {sel.key}")
        return "", True


async def infer_group_resource(
    client: httpx.AsyncClient, pluralizer_url: str, api_version: str, kind: str
) -> Tuple[str, bool]:
    """Ask the pluralizer service for the resource name of `kind`.

    Example: (`core.krateo.io/v1alpha1`, `CompositionDefinition`) ->
    `compositiondefinitions`.

    """
    params = {"apiVersion": api_version, "kind": kind}
    try:
        ret = await client.get(pluralizer_url, params=params)
    except httpx.HTTPError as err:
        logit.error("could not make request to pluralizer", {"reason": str(err)})
        return "", True

    if ret.status_code != 200:
        logit.error("pluralizer response not 200", {"status": ret.status_code})
        return "", True

    try:
        plural = ret.json()["plural"]
        assert isinstance(plural, str) and plural != ""
    except (json.JSONDecodeError, KeyError, TypeError, AssertionError):
        logit.error("failed to parse pluralizer response", {"body": ret.text})
        return "", True
    return plural, False


async def get_database_credentials(
    k8sconfig: K8sConfig, name: str, namespace: str
) -> Tuple[DatabaseCredentials, bool]:
    """Return the notebook credentials from the `DatabaseConfig` `namespace/name`."""
    ref = Reference(
        apiVersion="finops.krateo.io/v1",
        kind="DatabaseConfig",
        resource="databaseconfigs",
        name=name,
        namespace=namespace,
    )
    manifest, err = await get_obj(k8sconfig, ref)
    if err:
        return DatabaseCredentials(), True

    try:
        spec = manifest["spec"]
        sel = SecretKeySelector.model_validate(spec["passwordSecretRef"])
        username = spec["username"]
    except (KeyError, TypeError, ValueError):
        logit.error(f"invalid DatabaseConfig {namespace}/{name}")
        return DatabaseCredentials(), True

    password, err = await get_secret_value(k8sconfig, sel)
    if err:
        return DatabaseCredentials(), True
    return DatabaseCredentials(username=username, password=password), False


# ----------------------------------------------------------------------
# Discovery.
# ----------------------------------------------------------------------


async def find_composition(
    k8sconfig: K8sConfig,
    client: httpx.AsyncClient,
    pluralizer_url: str,
    uid: str,
) -> Tuple[dict, Reference | None, bool]:
    """Return the composition with `uid` and a reference to it.

    The composition may be any resource type in any version of the
    `composition.krateo.io` API group, so we have to search all of them.

    """
    # Find all versions of the group.
    resp, err = await get(k8sconfig, "/apis")
    if err:
        return {}, None, True

    versions: List[str] = []
    for group in resp.get("groups", []):
        if group.get("name") == COMPOSITION_GROUP:
            versions.extend(_["version"] for _ in group.get("versions", []))

    if len(versions) == 0:
        logit.error(f"no versions found for group {COMPOSITION_GROUP}")
        return {}, None, True

    for version in versions:
        resp, err = await get(k8sconfig, f"/apis/{COMPOSITION_GROUP}/{version}")
        if err:
            logit.warning(f"error getting resources for version {version}")
            continue

        for res in resp.get("resources", []):
            # Skip sub-resources like `foo/status` and those we cannot list.
            if "/" in res["name"] or "list" not in res.get("verbs", []):
                continue

            path = f"/apis/{COMPOSITION_GROUP}/{version}/{res['name']}"
            items, err = await get(k8sconfig, path)
            if err:
                logit.warning(f"error listing resources of type {res['name']}")
                continue

            for item in items.get("items", []):
                meta = item.get("metadata", {})
                if meta.get("uid") != uid:
                    continue

                conditions = item.get("status", {}).get("conditions", [])
                if len(conditions) == 0:
                    logit.error(f"could not get status reason of composition {uid}")
                    return {}, None, True
                if conditions[0].get("reason") == "Creating":
                    logit.error(f"composition {uid} is creating")
                    return {}, None, True

                api_version = item.get("apiVersion", f"{COMPOSITION_GROUP}/{version}")
                kind = item.get("kind", res.get("kind", ""))
                resource, err = await infer_group_resource(
                    client, pluralizer_url, api_version, kind
                )
                if err:
                    resource = res["name"]
                ref = Reference(
                    apiVersion=api_version,
                    kind=kind,
                    resource=resource,
                    name=meta.get("name", ""),
                    namespace=meta.get("namespace", ""),
                )
                return item, ref, False

    logit.error(f"did not find composition with id {uid}")
    return {}, None, True

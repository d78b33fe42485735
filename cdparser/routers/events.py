"""Handle the K8s events of CompositionDefinitions.

A `CreatedExternalResource` event downloads the Helm chart of the
CompositionDefinition, counts the FinOps resources in its templates and sends
them to the database notebook. A `DeletedExternalResource` event removes them
again.

"""

import logging
import tempfile
from pathlib import Path
from typing import Dict, Tuple

import pydantic
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from square.dtypes import K8sConfig

import cdparser.chart
import cdparser.k8s
import cdparser.notebook
from cdparser.models import ChartInfo, ErrorKind, K8sEvent, Reference, ServerConfig
from cdparser.routers.shared import get_config, get_k8scfg

# Convenience.
logit = logging.getLogger("app")
router = APIRouter()

COMPOSITION_DEFINITION_GROUP = "core.krateo.io"
COMPOSITION_DEFINITION_KIND = "CompositionDefinition"

REASON_CREATED = "CreatedExternalResource"
REASON_DELETED = "DeletedExternalResource"


def is_composition_definition(event: K8sEvent) -> bool:
    obj = event.involvedObject
    group, _ = cdparser.k8s.split_api_version(obj.apiVersion)
    return group == COMPOSITION_DEFINITION_GROUP and obj.kind == COMPOSITION_DEFINITION_KIND


def error_response(event: K8sEvent, reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": f"Error while handling {event.reason} event: {reason}"},
    )


async def count_chart_resources(
    cfg: ServerConfig, k8scfg: K8sConfig, manifest: dict
) -> Tuple[Dict[str, int], ErrorKind | None]:
    """Return the FinOps resources of the chart in the CompositionDefinition `manifest`."""
    try:
        info = ChartInfo.model_validate(manifest["spec"]["chart"])
    except (KeyError, TypeError, pydantic.ValidationError):
        logit.error("CompositionDefinition has no valid chart")
        return {}, ErrorKind.REFERENCE_INVALID

    opts, err = await cdparser.chart.get_options(k8scfg, info)
    if err:
        return {}, err

    # Every request gets its own folder and we always remove it again.
    work_dir = Path(tempfile.mkdtemp(prefix="cdparser-"))
    try:
        return await cdparser.chart.run(opts, work_dir, cfg.annotation_label)
    finally:
        cdparser.chart.cleanup_directory(work_dir)


@router.post("/handle")
async def handle_event(
    event: K8sEvent,
    cfg: ServerConfig = Depends(get_config),
    k8scfg: K8sConfig = Depends(get_k8scfg),
):
    logit.debug("received event on /handle")
    if not is_composition_definition(event):
        return {"status": "ignored"}

    obj = event.involvedObject
    logit.info(f"Event {event.reason} received for composition definition {obj.uid}")

    creds, err = await cdparser.k8s.get_database_credentials(
        k8scfg, cfg.database_config.name, cfg.database_config.namespace
    )
    if err:
        return error_response(event, "cannot retrieve database credentials")

    # The UID of the CompositionDefinition is the primary key in the database.
    if event.reason == REASON_DELETED:
        logit.info(f"'{event.reason}' event for {obj.apiVersion} {obj.name} {obj.namespace}")
        err = await cdparser.notebook.call(
            cfg.httpclient,
            cfg.notebook_url,
            "delete",
            obj.uid,
            {},
            cfg.annotation_table,
            creds.username,
            creds.password,
        )
        if err:
            return error_response(event, ErrorKind.NOTEBOOK_FAILURE.value)
        return {"status": "ok"}

    resource, err = await cdparser.k8s.infer_group_resource(
        cfg.httpclient, cfg.pluralizer_url, obj.apiVersion, obj.kind
    )
    if err:
        return error_response(event, "cannot infer resource name")

    ref = Reference(
        apiVersion=obj.apiVersion,
        kind=obj.kind,
        resource=resource,
        name=obj.name,
        namespace=obj.namespace,
    )
    manifest, err = await cdparser.k8s.get_obj(k8scfg, ref)
    if err:
        return error_response(event, "error while retrieving object")

    if event.reason != REASON_CREATED:
        return {"status": "ok"}

    logit.info(f"'{event.reason}' event for {obj.apiVersion} {obj.name} {obj.namespace}")
    resources, err = await count_chart_resources(cfg, k8scfg, manifest)
    if err:
        return error_response(event, err.value)

    err = await cdparser.notebook.call(
        cfg.httpclient,
        cfg.notebook_url,
        "create",
        obj.uid,
        resources,
        cfg.annotation_table,
        creds.username,
        creds.password,
    )
    if err:
        return error_response(event, ErrorKind.NOTEBOOK_FAILURE.value)
    return {"status": "ok", "resources": resources}

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Tuple

import httpx
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp

import cdparser.k8s
import cdparser.routers.basic as basic
import cdparser.routers.events as events
from cdparser.models import NamespaceName, ServerConfig

# Convenience.
logit = logging.getLogger("app")

DEFAULT_ANNOTATION_TABLE = "composition_definition_annotations"
DEFAULT_ANNOTATION_LABEL = "krateo-finops-focus-resource"


def make_httpclient() -> Tuple[httpx.AsyncClient, bool]:
    ca_path = os.environ.get("CA_FILE", None)
    try:
        if ca_path:
            client = httpx.AsyncClient(verify=str(Path(ca_path).expanduser()))
        else:
            client = httpx.AsyncClient()
    except OSError as err:
        logit.error("cannot create http client", {"reason": tuple(err.args)})
        return httpx.AsyncClient(), True
    return client, False


def _require(name: str) -> str:
    """Return the value of environment variable `name` and insist it is non-empty."""
    value = os.environ[name]
    if value == "":
        raise ValueError(name)
    return value


# ----------------------------------------------------------------------
# Setup Server.
# ----------------------------------------------------------------------
def compile_server_config() -> Tuple[ServerConfig, bool]:
    try:
        client, err = make_httpclient()
        assert not err

        annotation_table = os.getenv("ANNOTATION_TABLE", "")
        if annotation_table == "":
            annotation_table = DEFAULT_ANNOTATION_TABLE
            logit.warning(f"annotation table is empty, using '{annotation_table}'")

        annotation_label = os.getenv("ANNOTATION_LABEL", "")
        if annotation_label == "":
            annotation_label = DEFAULT_ANNOTATION_LABEL
            logit.warning(f"annotation label is empty, using '{annotation_label}'")

        cfg = ServerConfig(
            kubeconfig=Path(os.getenv("KUBECONFIG", "")),
            kubecontext=os.getenv("KUBECONTEXT", ""),
            notebook_url=_require("URL_DATABASE_HANDLER_PRICING_NOTEBOOK"),
            pluralizer_url=os.getenv("URL_PLURALIZER", ""),
            database_config=NamespaceName(
                name=_require("DATABASE_CONFIG_NAME"),
                namespace=_require("DATABASE_CONFIG_NAMESPACE"),
            ),
            annotation_label=annotation_label,
            annotation_table=annotation_table,
            loglevel=os.getenv("DEBUG_LEVEL", "info").lower(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.environ["PORT_FINOPS_COMPOSITION_DEFINITION_PARSER"]),
            httpclient=client,
        )

        return cfg, False
    except (AssertionError, KeyError, ValueError) as e:
        logit.error("missing environment variables", {"names": tuple(e.args)})
        return (
            ServerConfig(
                kubeconfig=Path(""),
                kubecontext="",
                notebook_url="",
                pluralizer_url="",
                database_config=NamespaceName(),
                annotation_label="",
                annotation_table="",
                host="",
                port=-1,
                loglevel="",
                httpclient=httpx.AsyncClient(),
            ),
            True,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: ServerConfig = app.extra["config"]

    k8scfg, err = cdparser.k8s.create_cluster_config(cfg.kubeconfig, cfg.kubecontext)
    if err:
        raise RuntimeError("could not create K8s cluster config")
    app.extra["k8scfg"] = k8scfg

    # Provide a single AsyncClient instance to the entire app. This will ensure
    # efficient reuse of sessions, certificates and other common configuration options.
    async with cfg.httpclient, k8scfg.client:
        logit.info("server startup complete")
        yield
    logit.info("server shutdown complete")


async def validation_error_handler(
    _: Request, exc: RequestValidationError
) -> JSONResponse:
    logit.error("invalid request", {"detail": exc.errors()})
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder({"detail": exc.errors(), "body": exc.body}),
    )


def make_app() -> ASGIApp:
    """Return a fully configured FastAPI instance."""
    cfg, err = compile_server_config()
    if err:
        raise RuntimeError("could not meet preconditions to start server")

    app = FastAPI(
        title="FinOps CompositionDefinition Parser",
        summary="",
        description="",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.extra["config"] = cfg

    # Install the web server routes.
    app.include_router(events.router, prefix="", tags=["Events"])
    app.include_router(basic.router, prefix="", tags=["Basic"])

    # Install the exception handlers.
    app.add_exception_handler(RequestValidationError, handler=validation_error_handler)  # type: ignore

    return app

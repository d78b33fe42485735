import json
import logging
from typing import Dict

import httpx

# Convenience.
logit = logging.getLogger("app")


async def call(
    client: httpx.AsyncClient,
    url: str,
    operation: str,
    composition_id: str,
    resources: Dict[str, int],
    annotation_table: str,
    username: str,
    password: str,
) -> bool:
    """Send the `resources` of a composition definition to the database notebook.

    The `operation` is either `create` or `delete`. Return `True` on error.

    """
    payload = {
        "operation": operation,
        "composition_id": composition_id,
        "json_list": json.dumps(resources),
        "annotation_table": annotation_table,
    }

    try:
        ret = await client.post(url, json=payload, auth=(username, password))
    except httpx.HTTPError as err:
        logit.error("error sending request to notebook", {"reason": str(err)})
        return True

    if ret.status_code != 200:
        logit.error(
            "notebook returned non-200 status code",
            {"status": ret.status_code, "body": ret.text},
        )
        return True

    logit.info(f"Notebook call response body: {ret.text}")
    return False

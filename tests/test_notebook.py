import base64
import json

import httpx
import pytest

import cdparser.notebook

NOTEBOOK_URL = "http://notebook.test/handler"


class TestNotebook:
    async def test_create(self, respx_mock):
        route = respx_mock.post(NOTEBOOK_URL)
        route.return_value = httpx.Response(200, text="done")

        async with httpx.AsyncClient() as client:
            err = await cdparser.notebook.call(
                client,
                NOTEBOOK_URL,
                "create",
                "uid-1",
                {"svc-a": 2, "svc-db": 1},
                "composition_definition_annotations",
                "admin",
                "s3cret",
            )
        assert not err

        request = route.calls.last.request
        assert json.loads(request.content) == {
            "operation": "create",
            "composition_id": "uid-1",
            "json_list": '{"svc-a": 2, "svc-db": 1}',
            "annotation_table": "composition_definition_annotations",
        }
        expected = "Basic " + base64.b64encode(b"admin:s3cret").decode()
        assert request.headers["authorization"] == expected

    async def test_delete(self, respx_mock):
        route = respx_mock.post(NOTEBOOK_URL)
        route.return_value = httpx.Response(200)

        async with httpx.AsyncClient() as client:
            err = await cdparser.notebook.call(
                client, NOTEBOOK_URL, "delete", "uid-1", {}, "table", "admin", "pw"
            )
        assert not err

        payload = json.loads(route.calls.last.request.content)
        assert payload["operation"] == "delete"
        assert payload["json_list"] == "{}"

    @pytest.mark.parametrize("status", [201, 400, 401, 500])
    async def test_status_error(self, status: int, respx_mock):
        respx_mock.post(NOTEBOOK_URL).return_value = httpx.Response(status, text="nope")

        async with httpx.AsyncClient() as client:
            err = await cdparser.notebook.call(
                client, NOTEBOOK_URL, "create", "uid-1", {}, "table", "admin", "pw"
            )
        assert err

    async def test_network_error(self, respx_mock):
        respx_mock.post(NOTEBOOK_URL).side_effect = httpx.ConnectError

        async with httpx.AsyncClient() as client:
            err = await cdparser.notebook.call(
                client, NOTEBOOK_URL, "create", "uid-1", {}, "table", "admin", "pw"
            )
        assert err

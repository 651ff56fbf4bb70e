import json
from uuid import uuid4

import httpx
import pytest

from dentalos_marketing.services.automation.gateways import HttpxWebhookClient
from dentalos_marketing.services.segments import HttpPatientAttributeSource


@pytest.mark.asyncio
async def test_webhook_client_posts_json_with_idempotency_header() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, json={"accepted": True})

    client = HttpxWebhookClient(transport=httpx.MockTransport(handler))
    response = await client.request(
        "POST",
        "https://crm.example.com/hooks",
        headers={"X-Source": "marketing"},
        body={"patientId": uuid4()},
        idempotency_key="key-1",
    )

    assert response.ok
    assert response.body == {"accepted": True}
    request = captured[0]
    assert request.headers["Idempotency-Key"] == "key-1"
    assert request.headers["X-Source"] == "marketing"
    assert isinstance(json.loads(request.content)["patientId"], str)


@pytest.mark.asyncio
async def test_webhook_client_reports_error_status_and_text_body() -> None:
    client = HttpxWebhookClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="upstream down"))
    )
    response = await client.request(
        "PUT", "https://crm.example.com/hooks", headers={}, body=None, idempotency_key="key-2"
    )

    assert not response.ok
    assert response.body == "upstream down"


@pytest.mark.asyncio
async def test_webhook_client_enforces_host_allow_list() -> None:
    client = HttpxWebhookClient(
        allowed_hosts=["hooks.example.com"],
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )

    with pytest.raises(PermissionError):
        await client.request("POST", "https://evil.example.net/x", headers={}, body={}, idempotency_key="k")
    assert (
        await client.request("POST", "https://HOOKS.example.com/x", headers={}, body={}, idempotency_key="k")
    ).ok


@pytest.mark.asyncio
async def test_http_attribute_source_reads_snapshots_and_patient_ids() -> None:
    tenant_id, patient_id = uuid4(), uuid4()

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer secret"
        if request.url.path.endswith("/marketing-eligible"):
            return httpx.Response(200, json={"patientIds": [str(patient_id), "not-a-uuid"]})
        if request.url.path.endswith(f"/{patient_id}/marketing-attributes"):
            return httpx.Response(200, json={"attributes": {"age": 41}})
        return httpx.Response(404)

    source = HttpPatientAttributeSource(
        "https://patients.example.com/", api_key="secret", transport=httpx.MockTransport(handler)
    )

    assert await source.attributes_of(tenant_id, patient_id) == {"age": 41}
    assert await source.attributes_of(tenant_id, uuid4()) == {}
    assert await source.eligible_patient_ids(tenant_id) == [patient_id]

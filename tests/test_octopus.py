"""Tests for the Octopus Deploy integration (deployments, subscriptions, triggers)."""

import json
import time

import httpx
import pytest

from conftest import FakeClock, VendorAPI, json_headers
from opsconnect.core.base import APIError, ConfigurationError
from opsconnect.core.contexts import IntegrationInstance
from opsconnect.core.store import EXECUTION_FAILED
from opsconnect.engine import Engine
from opsconnect.integrations.octopus import Octopus
from opsconnect.integrations.octopus.client import Client, resolve_space, space_id_for
from opsconnect.integrations.octopus.common import related_document_ids
from opsconnect.integrations.octopus.deploy_release import EXECUTION_KEY, PAYLOAD_TYPE
from opsconnect.webhooks.subscriptions import deterministic_name

SERVER = "https://octopus.example.com"
SPACES = [
    {"Id": "Spaces-1", "Name": "Default", "IsDefault": True},
    {"Id": "Spaces-2", "Name": "Platform", "IsDefault": False},
]
DEPLOY_CONFIG = {"project": "Projects-1", "release": "Releases-7", "environment": "Environments-1"}


def task_states(*states):
    """Responder returning the given task states in order, repeating the last."""
    remaining = list(states)

    def respond(request):
        state = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        body = {"Id": "ServerTasks-1", "State": state}
        if state in ("Success", "Failed"):
            body["CompletedTime"] = "2026-03-01T10:05:00+00:00"
            body["Duration"] = "5 minutes"
        return httpx.Response(200, json=body)

    return respond


def octopus_api(*states) -> VendorAPI:
    return VendorAPI({
        ("GET", "/api/spaces/all"): SPACES,
        ("GET", "/api/Spaces-1/subscriptions/all"): [],
        ("POST", "/api/Spaces-1/subscriptions"): {"Id": "Subscriptions-1"},
        ("PUT", "/api/Spaces-1/subscriptions/Subscriptions-1"): {"Id": "Subscriptions-1"},
        ("DELETE", "/api/Spaces-1/subscriptions/Subscriptions-1"): httpx.Response(200),
        ("POST", "/api/Spaces-1/deployments"): {
            "Id": "Deployments-100",
            "TaskId": "ServerTasks-1",
            "ProjectId": "Projects-1",
            "ReleaseId": "Releases-7",
            "EnvironmentId": "Environments-1",
            "Created": "2026-03-01T10:00:00+00:00",
        },
        ("GET", "/api/tasks/ServerTasks-1"): task_states(*(states or ("Executing",))),
        ("POST", "/api/Spaces-1/tasks/ServerTasks-1/cancel"): httpx.Response(200),
    })


def deployment_event(category="DeploymentSucceeded", deployments=("Deployments-100",)):
    return {
        "Timestamp": "2026-03-01T10:05:01+00:00",
        "EventType": "SubscriptionPayload",
        "Payload": {
            "ServerUri": SERVER,
            "Event": {
                "Category": category,
                "Message": "Deploy to Production succeeded",
                "Occurred": "2026-03-01T10:05:00+00:00",
                "RelatedDocumentIds": [
                    *deployments,
                    "Projects-1",
                    "Releases-7",
                    "Environments-1",
                ],
            },
        },
    }


async def make_engine(api: VendorAPI, clock: FakeClock) -> Engine:
    engine = Engine(http=api.client())
    engine.add_integration(
        "octo", Octopus(clock=clock), {"serverUrl": SERVER + "/", "apiKey": "API-KEY"}
    )
    await engine.setup_node("deploy", "octo", "octopus.deployRelease", DEPLOY_CONFIG)
    return engine


async def deliver(engine: Engine, node_id: str, payload, secret=None):
    hook = engine.webhooks.find_by_node(node_id)
    if secret is None:
        secret = engine.webhooks.get_secret(hook["id"]).decode()
    headers = json_headers({"X-Webhook-Secret": secret})
    return await engine.handle_webhook(hook["id"], headers, json.dumps(payload).encode())


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TestClient:
    @pytest.mark.asyncio
    async def test_sends_api_key_header(self):
        api = octopus_api()
        client = Client(api.client(), SERVER, "API-KEY")
        await client.list_spaces()
        assert api.requests[0].headers["X-Octopus-ApiKey"] == "API-KEY"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_api_error(self):
        api = VendorAPI({("GET", "/api/tasks/ServerTasks-9"): httpx.Response(401, text="denied")})
        client = Client(api.client(), SERVER, "API-KEY")
        with pytest.raises(APIError) as exc_info:
            await client.get_task("ServerTasks-9")
        assert exc_info.value.status_code == 401

    def test_for_integration_requires_api_key(self):
        instance = IntegrationInstance("octo", Octopus(), {"serverUrl": SERVER})
        with pytest.raises(ConfigurationError, match="apiKey is required"):
            Client.for_integration(httpx.AsyncClient(), instance)

    @pytest.mark.asyncio
    async def test_resolve_space_defaults_and_by_name(self):
        client = Client(octopus_api().client(), SERVER, "API-KEY")
        assert (await resolve_space(client))["Id"] == "Spaces-1"
        assert (await resolve_space(client, "Platform"))["Id"] == "Spaces-2"
        with pytest.raises(ConfigurationError):
            await resolve_space(client, "Missing")

    @pytest.mark.asyncio
    async def test_space_is_cached_in_instance_metadata(self):
        api = octopus_api()
        client = Client(api.client(), SERVER, "API-KEY")
        instance = IntegrationInstance("octo", Octopus(), {"space": "Spaces-2"})

        assert await space_id_for(client, instance) == "Spaces-2"
        assert await space_id_for(client, instance) == "Spaces-2"
        assert instance.metadata["space"] == {"id": "Spaces-2", "name": "Platform"}
        assert len(api.calls("GET", "/api/spaces/all")) == 1


def test_related_document_ids_groups_by_prefix():
    grouped = related_document_ids(
        {"RelatedDocumentIds": ["Deployments-1", "Projects-2", "Deployments-3", "junk", 7]}
    )
    assert grouped == {"Deployments": ["Deployments-1", "Deployments-3"], "Projects": ["Projects-2"]}


# ---------------------------------------------------------------------------
# Subscription handler
# ---------------------------------------------------------------------------


class TestSubscriptionHandler:
    @pytest.mark.asyncio
    async def test_setup_creates_subscription_with_generated_secret(self, clock):
        api = octopus_api()
        engine = await make_engine(api, clock)
        hook = engine.webhooks.find_by_node("deploy")

        [create] = api.calls("POST", "/api/Spaces-1/subscriptions")
        body = json.loads(create.content)
        sub = body["EventNotificationSubscription"]
        secret = engine.webhooks.get_secret(hook["id"]).decode()

        assert body["Name"] == deterministic_name("OpsConnect", hook["id"])
        assert sub["WebhookURI"] == hook["url"]
        assert sub["WebhookHeaderKey"] == "X-Webhook-Secret"
        assert sub["WebhookHeaderValue"] == secret
        assert sorted(sub["Filter"]["EventCategories"]) == ["DeploymentFailed", "DeploymentSucceeded"]
        assert hook["metadata"] == {"subscriptionId": "Subscriptions-1", "spaceId": "Spaces-1"}

    @pytest.mark.asyncio
    async def test_space_error_while_provisioning_leaves_no_registration(self, clock):
        api = octopus_api()
        api.routes[("GET", "/api/spaces/all")] = []
        engine = Engine(http=api.client())
        engine.add_integration("octo", Octopus(clock=clock), {"serverUrl": SERVER, "apiKey": "k"})

        with pytest.raises(ConfigurationError, match="no spaces"):
            await engine.setup_node("deploy", "octo", "octopus.deployRelease", DEPLOY_CONFIG)

        assert engine.list_nodes() == []
        assert engine.webhooks.list_hooks() == []

        api.routes[("GET", "/api/spaces/all")] = SPACES
        assert await engine.provision_pending() == 0
        assert api.calls("POST", "/api/Spaces-1/subscriptions") == []

    @pytest.mark.asyncio
    async def test_stale_subscription_with_same_name_is_replaced(self, clock):
        api = octopus_api()
        engine = Engine(http=api.client())
        engine.add_integration("octo", Octopus(clock=clock), {"serverUrl": SERVER, "apiKey": "k"})

        def stale(request):
            hook = engine.webhooks.list_hooks()[0]
            name = deterministic_name("OpsConnect", hook["id"])
            return httpx.Response(200, json=[{"Id": "Subscriptions-9", "Name": name}])

        api.routes[("GET", "/api/Spaces-1/subscriptions/all")] = stale
        api.routes[("DELETE", "/api/Spaces-1/subscriptions/Subscriptions-9")] = httpx.Response(200)

        await engine.setup_node("deploy", "octo", "octopus.deployRelease", DEPLOY_CONFIG)

        assert len(api.calls("DELETE", "/api/Spaces-1/subscriptions/Subscriptions-9")) == 1
        assert len(api.calls("POST", "/api/Spaces-1/subscriptions")) == 1

    @pytest.mark.asyncio
    async def test_trigger_shares_the_subscription(self, clock):
        api = octopus_api()
        engine = await make_engine(api, clock)

        await engine.setup_node(
            "on-deploy", "octo", "octopus.onDeploymentEvent",
            {"eventCategories": ["DeploymentStarted"], "project": "Projects-1"},
        )

        [hook] = engine.webhooks.list_hooks()
        assert hook["references"] == ["deploy", "on-deploy"]
        assert "DeploymentStarted" in hook["configuration"]["events"]
        # Widening re-ran setup, which updated the subscription in place.
        [update] = api.calls("PUT", "/api/Spaces-1/subscriptions/Subscriptions-1")
        assert "DeploymentStarted" in json.loads(update.content)[
            "EventNotificationSubscription"]["Filter"]["EventCategories"]
        assert len(api.calls("POST", "/api/Spaces-1/subscriptions")) == 1

    @pytest.mark.asyncio
    async def test_update_falls_back_to_create_when_subscription_vanished(self, clock):
        api = octopus_api()
        engine = await make_engine(api, clock)
        api.routes[("PUT", "/api/Spaces-1/subscriptions/Subscriptions-1")] = httpx.Response(404)

        await engine.setup_node(
            "on-deploy", "octo", "octopus.onDeploymentEvent",
            {"eventCategories": ["DeploymentQueued"]},
        )

        assert len(api.calls("POST", "/api/Spaces-1/subscriptions")) == 2

    @pytest.mark.asyncio
    async def test_removing_last_node_deletes_subscription(self, clock):
        api = octopus_api()
        engine = await make_engine(api, clock)

        await engine.remove_node("deploy")

        assert len(api.calls("DELETE", "/api/Spaces-1/subscriptions/Subscriptions-1")) == 1
        assert engine.webhooks.list_hooks() == []

    @pytest.mark.asyncio
    async def test_cleanup_treats_not_found_as_success(self, clock):
        api = octopus_api()
        engine = await make_engine(api, clock)
        api.routes[("DELETE", "/api/Spaces-1/subscriptions/Subscriptions-1")] = httpx.Response(404)

        await engine.remove_node("deploy")

        assert engine.webhooks.list_hooks() == []


# ---------------------------------------------------------------------------
# Deploy release
# ---------------------------------------------------------------------------


class TestDeployRelease:
    @pytest.mark.asyncio
    async def test_missing_configuration_rejected_at_setup(self, clock):
        engine = Engine(http=octopus_api().client())
        engine.add_integration("octo", Octopus(clock=clock), {"serverUrl": SERVER, "apiKey": "k"})

        with pytest.raises(ConfigurationError, match="release is required"):
            await engine.setup_node("deploy", "octo", "octopus.deployRelease", {"project": "P"})
        assert engine.list_nodes() == []

    @pytest.mark.asyncio
    async def test_kickoff_records_deployment_correlation(self, clock):
        engine = await make_engine(octopus_api(), clock)

        execution = await engine.execute("deploy")

        assert execution.get_kv(EXECUTION_KEY) == "Deployments-100"
        assert len(engine.scheduler.pending(execution.id)) == 1
        assert not execution.is_finished()

    @pytest.mark.asyncio
    async def test_kickoff_failure_fails_execution(self, clock):
        api = octopus_api()
        engine = await make_engine(api, clock)
        api.routes[("POST", "/api/Spaces-1/deployments")] = httpx.Response(400, text="bad release")

        execution = await engine.execute("deploy")

        assert execution.state == EXECUTION_FAILED
        assert execution.failure["reason"] == "error"
        assert engine.scheduler.pending(execution.id) == []

    @pytest.mark.asyncio
    async def test_poll_until_success(self, clock):
        """Executing on the first poll, Success on the second: one emission."""
        engine = await make_engine(octopus_api("Executing", "Success"), clock)
        execution = await engine.execute("deploy")

        clock.advance(300)
        await engine.run_action(execution.id, "poll")
        assert not execution.is_finished()
        assert len(engine.scheduler.pending(execution.id)) == 2

        clock.advance(300)
        await engine.run_action(execution.id, "poll")
        await engine.run_action(execution.id, "poll")

        [output] = execution.outputs
        assert output["channel"] == "success"
        assert output["type"] == PAYLOAD_TYPE
        payload = output["payloads"][0]
        assert payload["deploymentId"] == "Deployments-100"
        assert payload["taskState"] == "Success"
        assert payload["completedTime"] == "2026-03-01T10:05:00+00:00"
        assert payload["duration"] == "5 minutes"

    @pytest.mark.asyncio
    async def test_failed_task_goes_to_failed_channel(self, clock):
        engine = await make_engine(octopus_api("Failed"), clock)
        execution = await engine.execute("deploy")
        await engine.run_action(execution.id, "poll")
        assert execution.outputs[0]["channel"] == "failed"

    @pytest.mark.asyncio
    async def test_webhook_resolves_first_matching_candidate(self, clock):
        engine = await make_engine(octopus_api("Success"), clock)
        execution = await engine.execute("deploy")

        response = await deliver(
            engine, "deploy", deployment_event(deployments=("Deployments-999", "Deployments-100"))
        )

        assert response.status_code == 200
        [output] = execution.outputs
        assert output["channel"] == "success"

    @pytest.mark.asyncio
    async def test_webhook_for_completed_execution_is_acknowledged(self, clock):
        engine = await make_engine(octopus_api("Success"), clock)
        execution = await engine.execute("deploy")
        await engine.run_action(execution.id, "poll")

        response = await deliver(engine, "deploy", deployment_event())

        assert response.status_code == 200
        assert len(execution.outputs) == 1

    @pytest.mark.asyncio
    async def test_failed_event_with_lagging_task_state(self, clock):
        engine = await make_engine(octopus_api("Executing"), clock)
        execution = await engine.execute("deploy")

        await deliver(engine, "deploy", deployment_event(category="DeploymentFailed"))

        [output] = execution.outputs
        assert output["channel"] == "failed"
        assert output["payloads"][0]["taskState"] == "Failed"
        assert output["payloads"][0]["completedTime"] == "2026-03-01T10:05:01+00:00"

    @pytest.mark.parametrize("body", [b"", b"<html>maintenance</html>"])
    @pytest.mark.asyncio
    async def test_unreadable_task_body_keeps_polling(self, clock, body):
        api = octopus_api()
        engine = await make_engine(api, clock)
        api.routes[("GET", "/api/tasks/ServerTasks-1")] = httpx.Response(200, content=body)
        execution = await engine.execute("deploy")

        clock.advance(300)
        assert await engine.run_due_actions(now=time.time() + 10_000) == 1

        assert not execution.is_finished()
        assert len(engine.scheduler.pending(execution.id)) == 1

        api.routes[("GET", "/api/tasks/ServerTasks-1")] = task_states("Success")
        clock.advance(300)
        await engine.run_due_actions(now=time.time() + 20_000)

        assert execution.outputs[0]["channel"] == "success"

    @pytest.mark.asyncio
    async def test_success_event_with_empty_task_read_back(self, clock):
        api = octopus_api()
        engine = await make_engine(api, clock)
        api.routes[("GET", "/api/tasks/ServerTasks-1")] = httpx.Response(200, content=b"")
        execution = await engine.execute("deploy")

        response = await deliver(engine, "deploy", deployment_event())

        assert response.status_code == 200
        [output] = execution.outputs
        assert output["channel"] == "success"

    @pytest.mark.asyncio
    async def test_wrong_secret_is_rejected(self, clock):
        engine = await make_engine(octopus_api("Success"), clock)
        execution = await engine.execute("deploy")

        response = await deliver(engine, "deploy", deployment_event(), secret="wrong")

        assert response.status_code == 403
        assert execution.outputs == []

    @pytest.mark.asyncio
    async def test_times_out_after_budget(self, clock):
        engine = await make_engine(octopus_api("Executing"), clock)
        execution = await engine.execute("deploy")

        clock.advance(21_600 + 1)
        await engine.run_action(execution.id, "poll")

        assert execution.failure["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_cancel_cancels_task_and_fails_execution(self, clock):
        api = octopus_api("Executing")
        engine = await make_engine(api, clock)
        execution = await engine.execute("deploy")

        await engine.cancel(execution.id)

        assert len(api.calls("POST", "/api/Spaces-1/tasks/ServerTasks-1/cancel")) == 1
        assert execution.failure["reason"] == "cancelled"
        # A poll scheduled before the cancel still fires and does nothing.
        ran = await engine.run_due_actions(now=time.time() + 10_000)
        assert ran == 1
        assert execution.outputs == []

    @pytest.mark.asyncio
    async def test_cancel_failure_does_not_fail_cancellation(self, clock):
        api = octopus_api("Executing")
        engine = await make_engine(api, clock)
        api.routes[("POST", "/api/Spaces-1/tasks/ServerTasks-1/cancel")] = httpx.Response(500)
        execution = await engine.execute("deploy")

        await engine.cancel(execution.id)

        assert execution.failure["reason"] == "cancelled"


# ---------------------------------------------------------------------------
# Deployment event trigger
# ---------------------------------------------------------------------------


class TestOnDeploymentEvent:
    async def _engine(self, api, clock, configuration):
        engine = Engine(http=api.client())
        engine.add_integration("octo", Octopus(clock=clock), {"serverUrl": SERVER, "apiKey": "k"})
        await engine.setup_node("trigger", "octo", "octopus.onDeploymentEvent", configuration)
        return engine

    @pytest.mark.asyncio
    async def test_emits_selected_category(self, clock):
        engine = await self._engine(octopus_api(), clock, {"project": "Projects-1"})

        response = await deliver(engine, "trigger", deployment_event())

        assert response.is_ok
        [event] = engine.events.events_for("trigger")
        assert event["type"] == "octopus.deployment.succeeded"
        assert event["data"]["deploymentId"] == "Deployments-100"
        assert event["data"]["projectId"] == "Projects-1"
        assert event["data"]["serverUri"] == SERVER

    @pytest.mark.asyncio
    async def test_scope_filters_requested_on_subscription(self, clock):
        api = octopus_api()
        await self._engine(api, clock, {"project": "Projects-1", "environment": "Environments-2"})

        [create] = api.calls("POST", "/api/Spaces-1/subscriptions")
        filters = json.loads(create.content)["EventNotificationSubscription"]["Filter"]
        assert filters["Projects"] == ["Projects-1"]
        assert filters["Environments"] == ["Environments-2"]

    @pytest.mark.asyncio
    async def test_unselected_category_is_ignored(self, clock):
        engine = await self._engine(octopus_api(), clock, {})
        response = await deliver(engine, "trigger", deployment_event(category="DeploymentStarted"))
        assert response.status_code == 200
        assert engine.events.events_for("trigger") == []

    @pytest.mark.asyncio
    async def test_other_environment_is_ignored(self, clock):
        engine = await self._engine(octopus_api(), clock, {"environment": "Environments-2"})
        response = await deliver(engine, "trigger", deployment_event())
        assert response.status_code == 200
        assert engine.events.events_for("trigger") == []

    @pytest.mark.asyncio
    async def test_malformed_body_is_400(self, clock):
        engine = await self._engine(octopus_api(), clock, {})
        hook = engine.webhooks.find_by_node("trigger")
        secret = engine.webhooks.get_secret(hook["id"]).decode()

        response = await engine.handle_webhook(
            hook["id"], json_headers({"X-Webhook-Secret": secret}), b"{oops"
        )

        assert response.status_code == 400

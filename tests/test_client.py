"""Tests for azpim.client with a stubbed backend."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from azpim.client import PimClient, _already_exists
from azpim.errors import PermanentRemoteError, TransientRemoteError
from azpim.models import AssignmentState, ListFilter, Scope
from azpim.orchestrator import ActivateOperation, BatchOrchestrator, DeactivateOperation, TimedOutWaiting
from azpim.retry import RetryingOperation

from conftest import SUB, SUB_SCOPE


RG = f"{SUB_SCOPE}/resourceGroups/rg"


def _instance(role, scope, scope_name, principal="p1"):
    return {
        "id": f"{scope}/providers/Microsoft.Authorization/roleEligibilityScheduleInstances/{role}",
        "properties": {
            "roleDefinitionId": f"/providers/Microsoft.Authorization/roleDefinitions/{role.lower()}",
            "principalId": principal,
            "expandedProperties": {
                "roleDefinition": {"displayName": role},
                "scope": {"id": scope, "displayName": scope_name},
            },
        },
    }


class FakeBackend:
    def __init__(self, pages=None):
        self.pages = pages or {}
        self.list_calls = []
        self.arm = MagicMock(return_value={})
        self.send = MagicMock(return_value={})

    def principal_id(self):
        return "me"

    def arm_list(self, operation, *, scope=None, query=None):
        self.list_calls.append((operation, scope.value if scope else None, dict(query or {})))
        page = self.pages.get(operation, {"value": []})
        if isinstance(page, list):
            item = page.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return page


def _client(backend, subscriptions=None):
    return PimClient(backend, retry=RetryingOperation(retries=2, sleep=lambda s: None), subscriptions=subscriptions)


def _assignment_for(role):
    backend = FakeBackend({"roleEligibilityScheduleInstances": {"value": [_instance(role, SUB_SCOPE, "Prod")]}})
    return _client(backend).find_eligible(role, Scope(SUB_SCOPE))


class TestListings:
    def test_eligible_for_caller(self):
        backend = FakeBackend({"roleEligibilityScheduleInstances": {"value": [_instance("Owner", SUB_SCOPE, "Prod")]}})
        (a,) = _client(backend).list_eligible()
        assert backend.list_calls == [("roleEligibilityScheduleInstances", None, {"$filter": "asTarget()"})]
        assert a.principal_id is None

    def test_eligible_at_scope(self):
        backend = FakeBackend({"roleEligibilityScheduleInstances": {"value": [_instance("Owner", SUB_SCOPE, "Prod")]}})
        (a,) = _client(backend).list_eligible(Scope(SUB_SCOPE))
        assert backend.list_calls[0][1:] == (SUB_SCOPE, {"$filter": "atScope()"})
        assert a.principal_id == "p1"

    def test_explicit_filter(self):
        backend = FakeBackend()
        _client(backend).list_active(Scope(SUB_SCOPE), ListFilter.AS_TARGET)
        assert backend.list_calls == [("roleAssignmentScheduleInstances", SUB_SCOPE, {"$filter": "asTarget()"})]

    def test_reads_are_retried(self):
        backend = FakeBackend(
            {"roleEligibilityScheduleInstances": [TransientRemoteError("busy", status=503), {"value": []}]}
        )
        assert _client(backend).list_eligible() == []
        assert len(backend.list_calls) == 2

    def test_resources_exclude_the_scope_itself(self):
        backend = FakeBackend(
            {
                "eligibleChildResources": {
                    "value": [{"id": SUB_SCOPE, "name": "sub"}, {"id": RG, "name": "rg", "type": "resourcegroup"}]
                }
            }
        )
        assert [r.id.value for r in _client(backend).list_resources(Scope(SUB_SCOPE))] == [RG]

    def test_role_assignments_use_definition_names(self):
        rd = f"{SUB_SCOPE}/providers/Microsoft.Authorization/roleDefinitions/r1"
        backend = FakeBackend(
            {
                "roleDefinitions": {"value": [{"id": rd, "name": "r1", "properties": {"roleName": "Reader"}}]},
                "roleAssignments": {
                    "value": [
                        {
                            "id": f"{SUB_SCOPE}/providers/Microsoft.Authorization/roleAssignments/a1",
                            "properties": {"roleDefinitionId": rd, "principalId": "p1", "scope": SUB_SCOPE},
                        }
                    ]
                },
            }
        )
        (a,) = _client(backend).list_role_assignments(Scope(SUB_SCOPE))
        assert a.role == "Reader"
        assert ("roleAssignments", SUB_SCOPE, {"$filter": "atScope()"}) in backend.list_calls


class TestNameResolution:
    def test_subscription_by_name_or_id(self):
        subs = MagicMock(return_value=[{"id": SUB, "name": "Production"}])
        client = _client(FakeBackend(), subscriptions=subs)
        assert client.resolve_subscription("production") == SUB
        assert client.resolve_subscription(SUB.upper()) == SUB
        assert client.resolve_subscription("Staging") is None
        subs.assert_called_once()

    def test_scope_name_falls_back_to_eligible_scopes(self):
        backend = FakeBackend({"roleEligibilityScheduleInstances": {"value": [_instance("Reader", RG, "web-rg")]}})
        client = _client(backend, subscriptions=lambda: [])
        assert client.resolve_scope_name("WEB-RG") == Scope(RG)
        assert client.resolve_scope_name("other") is None


class TestState:
    def _client(self, *, active=(), eligible=(), requests=()):
        backend = FakeBackend(
            {
                "roleAssignmentScheduleInstances": {"value": list(active)},
                "roleEligibilityScheduleInstances": {"value": list(eligible)},
                "roleAssignmentScheduleRequests": {"value": list(requests)},
            }
        )
        return _client(backend)

    def test_active(self):
        client = self._client(active=[_instance("Owner", SUB_SCOPE, "Prod")])
        assert client.get_assignment_state("owner", Scope(SUB_SCOPE)) is AssignmentState.ACTIVE

    def test_pending(self):
        request = {
            "properties": {
                "status": "PendingProvisioning",
                "requestType": "SelfActivate",
                "expandedProperties": {"roleDefinition": {"displayName": "Owner"}, "scope": {"id": SUB_SCOPE}},
            }
        }
        client = self._client(eligible=[_instance("Owner", SUB_SCOPE, "Prod")], requests=[request])
        assert client.get_assignment_state("Owner", Scope(SUB_SCOPE)) is AssignmentState.PENDING

    def test_eligible(self):
        client = self._client(eligible=[_instance("Owner", SUB_SCOPE, "Prod")])
        assert client.get_assignment_state("Owner", Scope(SUB_SCOPE)) is AssignmentState.ELIGIBLE

    def test_removed(self):
        assert self._client().get_assignment_state("Owner", Scope(SUB_SCOPE)) is AssignmentState.REMOVED

    def test_pending_request_of_other_type_is_ignored(self):
        request = {
            "properties": {
                "status": "Accepted",
                "requestType": "SelfDeactivate",
                "expandedProperties": {"roleDefinition": {"displayName": "Owner"}, "scope": {"id": SUB_SCOPE}},
            }
        }
        client = self._client(active=[], eligible=[_instance("Owner", SUB_SCOPE, "Prod")], requests=[request])
        scope = Scope(SUB_SCOPE)
        assert client.get_assignment_state("Owner", scope, "SelfActivate") is AssignmentState.ELIGIBLE
        assert client.get_assignment_state("Owner", scope, "SelfDeactivate") is AssignmentState.PENDING

    def test_state_reads_are_single_attempt(self):
        backend = FakeBackend({"roleAssignmentScheduleInstances": [TransientRemoteError("busy", status=503), {"value": []}]})
        with pytest.raises(TransientRemoteError):
            _client(backend).get_assignment_state("Owner", Scope(SUB_SCOPE))
        assert len(backend.list_calls) == 1


class Unavailable(FakeBackend):
    """Every listing fails with a transient error."""

    def arm_list(self, operation, *, scope=None, query=None):
        self.list_calls.append((operation, scope.value if scope else None, dict(query or {})))
        raise TransientRemoteError("service unavailable", status=503)


class TestWaitDeadline:
    def _run(self, op, wait_timeout):
        now = [0.0]

        def sleep(s):
            now[0] += s

        backend = Unavailable()
        client = PimClient(backend, retry=RetryingOperation(sleep=sleep))
        orch = BatchOrchestrator(
            client,
            wait_timeout=wait_timeout,
            poll_interval=5,
            retry=RetryingOperation(retries=0, sleep=sleep),
            clock=lambda: now[0],
            sleep=sleep,
        )
        return orch.run([op]), now[0], backend

    def _activation(self):
        a = _assignment_for("Owner")
        return ActivateOperation(role="Owner", scope=Scope(SUB_SCOPE), justification="x", assignment=a)

    def test_zero_timeout_does_not_outlast_a_failing_poll(self):
        report, spent, backend = self._run(self._activation(), 0)
        outcome = report.outcomes[0]
        assert isinstance(outcome, TimedOutWaiting)
        assert "unknown" in outcome.reason
        assert spent == 0
        assert len(backend.list_calls) == 1

    def test_failing_polls_stop_at_the_deadline(self):
        a = _assignment_for("Owner")
        op = DeactivateOperation(role="Owner", scope=Scope(SUB_SCOPE), assignment=a)
        report, spent, backend = self._run(op, 10)
        assert isinstance(report.outcomes[0], TimedOutWaiting)
        assert spent == 10
        assert len(backend.list_calls) == 3


class TestMutations:
    def _assignment(self):
        backend = FakeBackend({"roleEligibilityScheduleInstances": {"value": [_instance("Owner", SUB_SCOPE, "Prod")]}})
        client = _client(backend)
        return client, backend, client.find_eligible("Owner", Scope(SUB_SCOPE))

    def test_activate(self):
        client, backend, a = self._assignment()
        client.activate(a, "ticket-1", 60)
        args, kwargs = backend.arm.call_args
        assert args == ("PUT", "roleAssignmentScheduleRequests")
        assert kwargs["scope"] == Scope(SUB_SCOPE)
        props = kwargs["json_body"]["properties"]
        assert props["principalId"] == "me"
        assert props["requestType"] == "SelfActivate"
        assert props["justification"] == "ticket-1"
        assert props["scheduleInfo"]["expiration"]["duration"] == "PT60M"
        assert kwargs["accept"] is _already_exists

    def test_deactivate(self):
        client, backend, a = self._assignment()
        client.deactivate(a)
        assert backend.arm.call_args.kwargs["json_body"]["properties"]["requestType"] == "SelfDeactivate"

    def test_mutations_are_not_retried(self):
        client, backend, a = self._assignment()
        backend.arm.side_effect = TransientRemoteError("busy", status=503)
        with pytest.raises(TransientRemoteError):
            client.activate(a, "x", 5)
        assert backend.arm.call_count == 1

    def test_already_exists(self):
        assert _already_exists(400, {"error": {"code": "RoleAssignmentExists"}})
        assert _already_exists(400, {"error": {"code": "RoleAssignmentRequestExists"}})
        assert not _already_exists(400, {"error": {"code": "InvalidRequest"}})
        assert not _already_exists(409, {"error": {"code": "RoleAssignmentExists"}})

    def test_delete_assignment(self):
        backend = FakeBackend()
        aid = f"{RG}/providers/Microsoft.Authorization/roleAssignments/a1"
        _client(backend).delete_assignment(aid, Scope(SUB_SCOPE))
        args, kwargs = backend.send.call_args
        assert args == ("DELETE", f"https://management.azure.com{aid}")
        assert kwargs["params"] == {"api-version": "2022-04-01"}

    def test_delete_assignment_outside_scope(self):
        backend = FakeBackend()
        with pytest.raises(PermanentRemoteError):
            _client(backend).delete_assignment(f"{RG}/providers/Microsoft.Authorization/roleAssignments/a1", Scope("/subscriptions/other"))
        backend.send.assert_not_called()

    def test_delete_eligible(self):
        backend = FakeBackend({"roleEligibilityScheduleInstances": {"value": [_instance("Owner", SUB_SCOPE, "Prod", principal="gone")]}})
        client = _client(backend)
        (a,) = client.list_eligible(Scope(SUB_SCOPE))
        client.delete_eligible(a)
        args, kwargs = backend.arm.call_args
        assert args == ("PUT", "roleEligibilityScheduleRequests")
        props = kwargs["json_body"]["properties"]
        assert (props["principalId"], props["requestType"]) == ("gone", "AdminRemove")

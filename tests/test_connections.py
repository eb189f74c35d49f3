from __future__ import annotations

import pytest
from sqlalchemy import func, select

from treeflow.db import repository
from treeflow.db.models import InputType, StepConnection
from treeflow.graph.connections import ConnectionService, ConnectionValidator
from treeflow.graph.errors import (
    CrossTreeFlowReference,
    DuplicateConnection,
    GraphInvariantError,
    OutputAlreadyWired,
    SelfLoop,
)


@pytest.fixture
def service(session) -> ConnectionService:  # type: ignore[no-untyped-def]
    return ConnectionService(session)


def _connections(session) -> int:  # type: ignore[no-untyped-def]
    return session.execute(select(func.count()).select_from(StepConnection)).scalar_one()


class TestConnect:
    def test_self_loop_is_rejected(self, session, editor, steps, service):
        step_b = steps["b"]
        loop_out = editor.add_output(step_b, name="again")
        loop_in = editor.add_input(step_b, name="back in")
        before = _connections(session)

        with pytest.raises(SelfLoop):
            service.connect(loop_out, loop_in)

        assert _connections(session) == before
        assert loop_out.connection is None

    def test_duplicate_then_reconnect_after_disconnect(self, session, editor, steps, service):
        retry = steps["a"].outputs[1]
        entry = editor.add_input(steps["c"], name="after retry")

        connection = service.connect(retry, entry)
        with pytest.raises(DuplicateConnection):
            service.connect(retry, entry)

        service.disconnect(connection)
        assert retry.connection is None

        again = service.connect(retry, entry)
        assert again.target_input is entry
        assert retry.connection is again

    def test_one_wire_per_output(self, editor, steps, service):
        success = steps["a"].outputs[0]
        other = editor.add_input(steps["c"], name="shortcut")

        with pytest.raises(OutputAlreadyWired):
            service.connect(success, other)

        assert success.connection.target_input.step is steps["b"]

    def test_fan_in_is_allowed(self, editor, steps, service):
        entry = editor.add_input(steps["c"], name="shared entry")
        retry = steps["a"].outputs[1]
        extra = editor.add_output(steps["b"], name="skip ahead")

        service.connect(retry, entry)
        service.connect(extra, entry)

        assert {c.source_output.name for c in entry.connections} == {"retry", "skip ahead"}

    def test_cross_tree_flow_is_rejected(self, session, editor, steps, service):
        other_flow = editor.create_tree_flow(name="Other")
        foreign = editor.add_step(other_flow, name="Foreign", first=True)
        foreign_in = editor.add_input(foreign, name="in")

        with pytest.raises(CrossTreeFlowReference):
            service.connect(steps["a"].outputs[1], foreign_in)

    def test_connect_syncs_destination_hint(self, editor, steps, service):
        retry = steps["a"].outputs[1]
        assert retry.destination_step is None
        entry = editor.add_input(steps["c"], name="after retry")

        service.connect(retry, entry)
        assert retry.destination_step is steps["c"]

    def test_connect_bumps_revision(self, editor, onboarding, steps, service):
        entry = editor.add_input(steps["c"], name="after retry")
        before = onboarding.revision
        service.connect(steps["a"].outputs[1], entry)
        assert onboarding.revision == before + 1


class TestDisconnect:
    def test_endpoints_survive_disconnect(self, session, steps, service):
        success = steps["a"].outputs[0]
        target = success.connection.target_input

        service.disconnect(success.connection)

        assert success.connection is None
        assert success.destination_step is None
        assert target in steps["b"].inputs
        assert target.connections == []
        assert success in steps["a"].outputs

    def test_disconnect_keeps_unrelated_hint(self, editor, steps, service):
        retry = steps["a"].outputs[1]
        entry = editor.add_input(steps["c"], name="after retry")
        connection = service.connect(retry, entry)
        editor.set_output_destination(retry, steps["b"])

        service.disconnect(connection)
        assert retry.destination_step is steps["b"]

    def test_disconnect_step_removes_both_directions(self, session, steps, service):
        removed = service.disconnect_step(steps["b"])
        assert removed == 2
        assert _connections(session) == 0


class TestValidator:
    @pytest.mark.unit
    def test_check_reports_without_raising(self):
        from treeflow.db.models import Step, StepInput, StepOutput, TreeFlow

        tree_flow = TreeFlow(name="Detached")
        step = Step(name="Only")
        tree_flow.add_step(step)
        out = StepOutput(name="out")
        step_in = StepInput(name="in", type=InputType.ANY)
        step.outputs.append(out)
        step.inputs.append(step_in)

        error = ConnectionValidator().check(out, step_in)
        assert isinstance(error, SelfLoop)
        assert isinstance(error, GraphInvariantError)
        assert out.connection is None

    def test_existing_wire_reports_duplicate(self, steps):
        success = steps["a"].outputs[0]
        target = success.connection.target_input
        assert isinstance(ConnectionValidator().check(success, target), DuplicateConnection)


def test_list_connections(session, onboarding, service):
    connections = service.list_connections(onboarding)
    assert sorted(str(c) for c in connections) == ["next -> from B", "success -> from A"]
    for connection in connections:
        found = repository.find_connection(
            session, source_output_id=connection.source_output_id
        )
        assert found is connection

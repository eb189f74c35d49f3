from __future__ import annotations

import pytest
from sqlalchemy import func, select

from treeflow.db.models import FewShotType, InputType, Step, StepConnection, StepOutput
from treeflow.graph.errors import (
    CrossTreeFlowReference,
    EntryPointError,
    StepNotFoundError,
    TreeFlowValidationError,
)


class TestTreeFlowLifecycle:
    def test_create_defaults(self, editor):
        tree_flow = editor.create_tree_flow(name="Lead Qualification", created_by="ana")
        assert tree_flow.version == "1.0.0"
        assert tree_flow.revision == 1
        assert tree_flow.is_active is False
        assert tree_flow.slug == "lead-qualification"
        assert tree_flow.created_by == "ana"

    def test_tree_flow_slugs_are_unique(self, editor, onboarding):
        twin = editor.create_tree_flow(name="Onboarding v1")
        assert twin.slug == "onboarding-v1-2"
        third = editor.create_tree_flow(name="Renamed", slug="onboarding-v1")
        assert third.slug == "onboarding-v1-3"

    def test_default_version_comes_from_settings(self, editor, monkeypatch):
        from treeflow.settings import get_settings

        monkeypatch.setenv("DEFAULT_FLOW_VERSION", "2.1.0")
        get_settings.cache_clear()
        try:
            tree_flow = editor.create_tree_flow(name="Renewal")
        finally:
            get_settings.cache_clear()
        assert tree_flow.version == "2.1.0"

    def test_every_mutation_bumps_revision(self, editor):
        tree_flow = editor.create_tree_flow(name="Counting")
        step = editor.add_step(tree_flow, name="Start", first=True)
        assert tree_flow.revision == 2
        editor.add_question(step, name="Name")
        editor.add_output(step, name="done")
        editor.add_input(step, name="in")
        assert tree_flow.revision == 5

    def test_delete_tree_flow(self, session, editor, onboarding):
        editor.delete_tree_flow(onboarding)
        assert session.execute(select(func.count()).select_from(Step)).scalar_one() == 0

    def test_activate_valid_flow(self, editor, onboarding):
        report = editor.activate(onboarding)
        assert report.is_valid
        assert onboarding.is_active is True

        editor.deactivate(onboarding)
        assert onboarding.is_active is False

    def test_activate_without_entry_point_fails(self, editor):
        tree_flow = editor.create_tree_flow(name="Headless")
        editor.add_step(tree_flow, name="Somewhere")

        with pytest.raises(TreeFlowValidationError) as exc_info:
            editor.activate(tree_flow)

        assert "no first step" in str(exc_info.value)
        assert exc_info.value.report.errors
        assert tree_flow.is_active is False


class TestFirstStep:
    def test_second_first_step_is_rejected(self, editor, onboarding):
        with pytest.raises(EntryPointError):
            editor.add_step(onboarding, name="Another start", first=True)
        assert len(onboarding.first_steps()) == 1

    def test_set_first_step_moves_designation(self, editor, onboarding, steps):
        editor.set_first_step(steps["b"])
        assert onboarding.get_first_step() is steps["b"]
        assert steps["a"].first is False
        assert onboarding.first_steps() == [steps["b"]]

    def test_set_first_step_is_idempotent(self, editor, onboarding, steps):
        revision = onboarding.revision
        editor.set_first_step(steps["a"])
        assert onboarding.revision == revision

    def test_removing_only_first_step_requires_replacement(self, editor, onboarding, steps):
        with pytest.raises(EntryPointError):
            editor.remove_step(steps["a"])
        assert steps["a"] in onboarding.steps

    def test_removing_first_step_with_replacement(self, session, editor, onboarding, steps):
        editor.remove_step(steps["a"], new_first=steps["b"])
        assert [s.name for s in onboarding.steps] == ["B", "C"]
        assert onboarding.get_first_step() is steps["b"]

    def test_replacement_only_applies_to_the_entry_point(self, editor, onboarding, steps):
        with pytest.raises(EntryPointError, match="not the entry point"):
            editor.remove_step(steps["c"], new_first=steps["b"])
        assert steps["c"] in onboarding.steps
        assert onboarding.get_first_step() is steps["a"]

    def test_replacement_must_belong_to_the_flow(self, editor, onboarding, steps):
        other = editor.create_tree_flow(name="Other")
        stranger = editor.add_step(other, name="Stranger", first=True)
        with pytest.raises(StepNotFoundError):
            editor.remove_step(steps["a"], new_first=stranger)

    def test_last_step_can_be_removed(self, editor):
        tree_flow = editor.create_tree_flow(name="Tiny")
        only = editor.add_step(tree_flow, name="Only", first=True)
        editor.remove_step(only)
        assert tree_flow.steps == []


class TestRemoveStep:
    def test_references_to_removed_step_become_null(self, session, editor, onboarding, steps):
        # A names B as destination (through the wire) and B's input names A as source
        editor.set_output_destination(steps["a"].outputs[1], steps["c"])
        c_from_b = steps["c"].inputs[0]
        assert c_from_b.source_step is steps["b"]

        editor.remove_step(steps["b"])
        session.expire_all()

        success, retry = steps["a"].outputs
        assert success.destination_step_id is None
        assert success.connection is None
        assert retry.destination_step is steps["c"]
        assert c_from_b.source_step_id is None
        assert c_from_b.connections == []
        assert session.execute(select(func.count()).select_from(StepConnection)).scalar_one() == 0

    def test_removed_step_content_is_deleted(self, session, editor, steps):
        editor.remove_step(steps["b"])
        remaining = session.execute(select(StepOutput.name)).scalars().all()
        assert sorted(remaining) == ["retry", "success"]


class TestContent:
    def test_questions_and_examples(self, editor, steps):
        question = editor.add_question(steps["c"], name="Feedback", importance=15)
        assert question.importance == 10
        assert question.view_order == 1

        editor.add_example(question, name="Happy", type=FewShotType.POSITIVE, prompt="Loved it")
        sad = editor.add_example(question, name="Sad", type=FewShotType.NEGATIVE, prompt="Meh")
        assert [e.name for e in question.negative_examples] == ["Sad"]

        editor.remove_example(sad)
        assert question.negative_examples == []

        editor.remove_question(question)
        assert steps["c"].questions == []

    def test_slugs_are_unique_within_owner(self, editor, steps):
        first = editor.add_output(steps["c"], name="Done")
        second = editor.add_output(steps["c"], name="Done")
        assert (first.slug, second.slug) == ("done", "done-2")


class TestEdgeCandidates:
    def test_output_order_is_appended(self, editor, steps):
        extra = editor.add_output(steps["a"], name="escalate")
        assert [o.name for o in steps["a"].outputs] == ["success", "retry", "escalate"]
        assert extra.view_order == 3

    def test_reorder_outputs(self, editor, steps):
        success, retry = steps["a"].outputs
        reordered = editor.reorder_outputs(steps["a"], [retry, success])
        assert [o.name for o in reordered] == ["retry", "success"]
        assert (retry.view_order, success.view_order) == (1, 2)

    def test_reorder_requires_a_permutation(self, editor, steps):
        success, _retry = steps["a"].outputs
        with pytest.raises(ValueError):
            editor.reorder_outputs(steps["a"], [success])
        with pytest.raises(ValueError):
            editor.reorder_outputs(steps["a"], [success, success])

    def test_destination_and_conditional_set_later(self, editor, steps):
        output = editor.add_output(steps["b"], name="later")
        assert not output.has_destination and not output.has_conditional

        editor.set_output_destination(output, steps["c"])
        editor.set_output_conditional(output, "goal captured")
        assert output.destination_step is steps["c"]
        assert output.conditional == "goal captured"

    def test_cross_tree_flow_destination_is_rejected(self, editor, steps):
        other = editor.create_tree_flow(name="Other")
        stranger = editor.add_step(other, name="Stranger", first=True)

        with pytest.raises(CrossTreeFlowReference):
            editor.add_output(steps["a"], name="leak", destination=stranger)
        with pytest.raises(CrossTreeFlowReference):
            editor.add_input(steps["a"], name="leak", source=stranger)
        with pytest.raises(CrossTreeFlowReference):
            editor.set_output_destination(steps["a"].outputs[1], stranger)

    def test_remove_output_and_input_drop_wires(self, session, editor, steps):
        editor.remove_output(steps["a"].outputs[0])
        editor.remove_input(steps["c"].inputs[0])
        assert session.execute(select(func.count()).select_from(StepConnection)).scalar_one() == 0

    def test_input_type_change(self, editor, steps):
        step_input = steps["b"].inputs[0]
        editor.set_input_type(step_input, InputType.FAILED)
        assert step_input.requires_failure

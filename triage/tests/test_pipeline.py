"""Tests for the triage pipeline wiring."""

import json
from unittest.mock import MagicMock

import pytest

from llm.src.client import LLMClient
from llm.tests.fakes import make_message
from triage.src.channel import ChannelClosedError
from triage.src.generator import DraftGenerator
from triage.src.models import DraftStatus, ItemState
from triage.src.pipeline import MaxTurnsExceededError, TriagePipeline
from triage.src.sessions import SessionStore, SessionTracker
from triage.src.sources import LocalInboxSource
from triage.src.tracker import COMPLETED, UNPROCESSED

from .fakes import make_email


@pytest.fixture
def pipeline(sample_emails, fake_generator, sample_config):
    return TriagePipeline(sample_emails, fake_generator, config=sample_config)


class TestStart:
    """Tests for kicking off generation."""

    @pytest.mark.asyncio
    async def test_generation_results_reach_tracker(self, pipeline, sample_emails):
        await pipeline.start()
        await pipeline.wait_idle()

        for email in sample_emails:
            item = pipeline.tracker.get_item(email.id)
            assert item.summary == f"Summary of {email.subject}"
            assert (item.draft is not None) == email.needs_reply
        assert pipeline.ready_count() == len(sample_emails)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, pipeline, fake_generator, sample_emails):
        await pipeline.start()
        await pipeline.start()
        await pipeline.wait_idle()

        assert len(fake_generator.summarize_calls) == len(sample_emails)

    @pytest.mark.asyncio
    async def test_generation_failure_surfaces_for_review(self, sample_config, fake_generator):
        fake_generator.fail_ids = {"bad"}
        pipeline = TriagePipeline([make_email("bad"), make_email("good")], fake_generator,
                                  config=sample_config)

        await pipeline.start()
        await pipeline.wait_idle()

        item = pipeline.next_item()
        assert item.email_id == "bad"
        assert item.state == ItemState.FAILED
        assert pipeline.next_item().email_id == "good"


class TestReviewFlow:
    """Tests for the reviewer's round trip."""

    @pytest.mark.asyncio
    async def test_refine_then_accept(self, pipeline, fake_generator):
        await pipeline.start()
        await pipeline.wait_idle()

        item = pipeline.next_item()
        assert item.email_id == "email-0"

        assert await pipeline.request_refinement(item.email_id, "More formal") is True
        assert item.state == ItemState.REFINING
        await pipeline.wait_idle()

        refined = pipeline.next_item()
        assert refined is item
        assert refined.draft.draft_content == "Refined draft 1"
        assert refined.refinement_count == 1

        pipeline.accept(item.email_id)

        assert item.draft.status == DraftStatus.ACCEPTED
        assert pipeline.stats().accepted == 1
        assert pipeline.sessions.get(item.email_id).transcript == []
        assert pipeline.total_cost() == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_refinement_failure_surfaces_for_review(self, pipeline, fake_generator):
        await pipeline.start()
        await pipeline.wait_idle()
        item = pipeline.next_item()

        fake_generator.refine_fail = True
        await pipeline.request_refinement(item.email_id, "Shorter")
        await pipeline.wait_idle()

        failed = pipeline.next_item()
        assert failed is item
        assert failed.state == ItemState.FAILED
        assert "overloaded" in failed.error

    @pytest.mark.asyncio
    async def test_max_turns(self, pipeline):
        await pipeline.start()
        await pipeline.wait_idle()
        item = pipeline.next_item()

        for i in range(3):
            await pipeline.request_refinement(item.email_id, f"round {i}")

        with pytest.raises(MaxTurnsExceededError) as exc_info:
            await pipeline.request_refinement(item.email_id, "one more")

        assert exc_info.value.max_turns == 3
        await pipeline.wait_idle()
        assert pipeline.sessions.turn_count(item.email_id) == 3

    @pytest.mark.asyncio
    async def test_unknown_id_refinement(self, pipeline):
        assert await pipeline.request_refinement("ghost", "x") is False

    @pytest.mark.asyncio
    async def test_edit_and_skip(self, pipeline):
        await pipeline.start()
        await pipeline.wait_idle()

        first = pipeline.next_item()
        second = pipeline.next_item()
        pipeline.accept(first.email_id, edited_content="My own words")
        pipeline.skip(second.email_id)

        assert first.draft.final_content == "My own words"
        assert pipeline.status().completed == 2
        assert pipeline.previous_item().email_id == "email-0"
        assert pipeline.next_in_sequence().email_id == "email-1"

    @pytest.mark.asyncio
    async def test_mark_completed_read(self, pipeline):
        await pipeline.start()
        await pipeline.wait_idle()
        pipeline.skip(pipeline.next_item().email_id)
        source = MagicMock()

        ids = pipeline.mark_completed_read(source)

        assert ids == ["email-0"]
        source.mark_read.assert_called_once_with(["email-0"])

    @pytest.mark.asyncio
    async def test_shutdown_rejects_new_refinements(self, pipeline, fake_generator):
        await pipeline.start()
        await pipeline.wait_idle()
        item = pipeline.next_item()
        waiting = pipeline.tracker.get_item("email-1")
        waiting_state = waiting.state

        pipeline.shutdown()

        assert pipeline.refinement.is_closed
        assert pipeline.sessions.active_sessions() == []
        with pytest.raises(ChannelClosedError):
            await pipeline.request_refinement(item.email_id, "late")
        with pytest.raises(ChannelClosedError):
            await pipeline.request_refinement("email-1", "late")

        assert item.state == ItemState.REVIEWING
        assert item.refinement_feedback is None
        assert waiting.state == waiting_state
        assert pipeline.tracker.location("email-1") == UNPROCESSED
        assert pipeline.tracker.refining_items() == []
        assert fake_generator.refine_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("finish", ["accept", "skip"])
    async def test_completed_email_is_not_refined(self, pipeline, fake_generator, finish):
        await pipeline.start()
        await pipeline.wait_idle()
        item = pipeline.next_item()
        getattr(pipeline, finish)(item.email_id)
        state = item.state

        assert await pipeline.request_refinement(item.email_id, "shorter") is False
        await pipeline.wait_idle()

        assert fake_generator.refine_calls == []
        assert item.state == state
        assert pipeline.sessions.turn_count(item.email_id) == 0
        assert pipeline.total_cost() == 0.0
        assert pipeline.tracker.location(item.email_id) == COMPLETED


class TestFromConfig:
    """Tests for building a pipeline from configuration."""

    @pytest.mark.asyncio
    async def test_loads_inbox_and_sessions(self, sample_config, inbox_file, fake_generator):
        sample_config["inbox"]["path"] = str(inbox_file)

        pipeline, source = TriagePipeline.from_config(sample_config, fake_generator)

        assert isinstance(source, LocalInboxSource)
        assert [item.email_id for item in pipeline.tracker.all_items()] == ["e1", "e2"]
        assert isinstance(pipeline.sessions.store, SessionStore)
        assert pipeline.max_turns == 3

        await pipeline.start()
        await pipeline.wait_idle()
        pipeline.accept(pipeline.next_item().email_id)
        pipeline.mark_completed_read(source)

        data = json.loads(inbox_file.read_text())
        unread = {e["id"]: e["unread"] for e in data["emails"]}
        assert unread == {"e1": False, "e2": True, "e3": False}

    def test_uses_given_session_tracker(self, sample_emails, fake_generator):
        sessions = SessionTracker()
        pipeline = TriagePipeline(sample_emails, fake_generator, sessions=sessions)

        assert pipeline.sessions is sessions
        assert pipeline.refinement.sessions is sessions
        assert pipeline.generation.max_concurrent == 3


class TestConversationRelease:
    """Tests for dropping model conversations once emails are done."""

    @pytest.mark.asyncio
    async def test_accept_and_skip_forget_resume_handles(self, pipeline, fake_generator):
        await pipeline.start()
        await pipeline.wait_idle()
        first = pipeline.next_item()
        second = pipeline.next_item()
        await pipeline.request_refinement(first.email_id, "Warmer")
        await pipeline.request_refinement(second.email_id, "Shorter")
        await pipeline.wait_idle()

        pipeline.accept(first.email_id)
        pipeline.skip(second.email_id)

        assert sorted(fake_generator.forgotten) == ["session-1", "session-2"]

    @pytest.mark.asyncio
    async def test_unrefined_email_has_nothing_to_forget(self, pipeline, fake_generator):
        await pipeline.start()
        await pipeline.wait_idle()

        pipeline.accept(pipeline.next_item().email_id)

        assert fake_generator.forgotten == []

    @pytest.mark.asyncio
    async def test_shutdown_forgets_open_conversations(self, pipeline, fake_generator):
        await pipeline.start()
        await pipeline.wait_idle()
        item = pipeline.next_item()
        await pipeline.request_refinement(item.email_id, "Warmer")
        await pipeline.wait_idle()

        pipeline.shutdown()

        assert fake_generator.forgotten == ["session-1"]

    @pytest.mark.asyncio
    async def test_accept_releases_client_history(self, sample_emails, sample_config):
        anthropic_client = MagicMock()
        anthropic_client.messages.create.return_value = make_message("Thanks, see you Thursday.")
        client = LLMClient(anthropic_api_key="test-key")
        client._anthropic_client = anthropic_client
        pipeline = TriagePipeline(sample_emails, DraftGenerator(client), config=sample_config)

        await pipeline.start()
        await pipeline.wait_idle()
        item = pipeline.next_item()
        await pipeline.request_refinement(item.email_id, "Shorter")
        await pipeline.wait_idle()

        assert client.conversation_count == 1

        pipeline.accept(item.email_id)

        assert client.conversation_count == 0
        assert pipeline.sessions.get(item.email_id).turn_count == 1

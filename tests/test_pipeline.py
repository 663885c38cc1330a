import asyncio
import base64
import logging

import pytest

from imagestudio.errors import (
    DecodeError,
    GenerationError,
    NotAuthenticated,
    PersistencePartialFailure,
    QuotaExceeded,
    QuotaUnavailable,
    ValidationError,
)
from imagestudio.models import Blob, GenerationRequest, GenerationResult, Identity, Mode, Modality
from imagestudio.persistence import ArtifactGateway
from imagestudio.pipeline import MAX_PROMPT_LENGTH, Orchestrator, PipelineState, validate_request

from conftest import BUCKET, FakeAuth, FakeGenerator

USER = Identity.user("user-1")
DEVICE = Identity.anonymous("device-abc")


class SlowGenerator(FakeGenerator):
    def __init__(self, result, delay):
        super().__init__(result)
        self.delay = delay
        self.finished = False

    async def generate(self, prompt_text, modalities):
        await asyncio.sleep(self.delay)
        self.finished = True
        return self.result


class LateFailingGenerator(FakeGenerator):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def generate(self, prompt_text, modalities):
        await asyncio.sleep(self.delay)
        raise RuntimeError("upstream 500 after timeout")


class ExplodingSaver:
    async def save(self, image_bytes, mime_type, prompt_text, owner_id):
        raise KeyError("bucket")


def record_events(orchestrator):
    events = []
    orchestrator.subscribe(events.append)
    return events


class TestValidateRequest:
    def test_strips_prompt(self):
        assert validate_request(GenerationRequest("  a red bicycle \n")).prompt_text == "a red bicycle"

    @pytest.mark.parametrize("prompt", ["", "   ", "\n\t"])
    def test_empty_prompt(self, prompt):
        with pytest.raises(ValidationError):
            validate_request(GenerationRequest(prompt))

    def test_prompt_length_limit(self):
        validate_request(GenerationRequest("x" * MAX_PROMPT_LENGTH))
        with pytest.raises(ValidationError):
            validate_request(GenerationRequest("x" * (MAX_PROMPT_LENGTH + 1)))

    def test_edit_requires_image(self):
        with pytest.raises(ValidationError):
            validate_request(GenerationRequest("make it blue", mode=Mode.EDIT))
        with pytest.raises(ValidationError):
            validate_request(GenerationRequest("make it blue", mode=Mode.EDIT, source_image=Blob(b"", "image/png")))

    def test_edit_rejects_non_image_mime(self):
        with pytest.raises(ValidationError):
            validate_request(
                GenerationRequest("make it blue", mode=Mode.EDIT, source_image=Blob(b"%PDF", "application/pdf"))
            )

    def test_edit_size_limit(self):
        request = GenerationRequest("make it blue", mode=Mode.EDIT, source_image=Blob(b"x" * 11, "image/png"))
        validate_request(request, max_source_bytes=11)
        with pytest.raises(ValidationError):
            validate_request(request, max_source_bytes=10)

    def test_generate_rejects_source_image(self):
        with pytest.raises(ValidationError):
            validate_request(GenerationRequest("a bike", source_image=Blob(b"x", "image/png")))

    def test_empty_modalities(self):
        with pytest.raises(ValidationError):
            validate_request(GenerationRequest("a bike", response_modalities=()))


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_generate_saves_and_counts(self, generation_result, tracker, ledger, gateway, records):
        ledger.seed(USER.id, 2)
        generator = FakeGenerator(generation_result)
        orchestrator = Orchestrator(generator, tracker, gateway)
        events = record_events(orchestrator)

        outcome = await orchestrator.run(GenerationRequest("a red bicycle"), USER)

        assert outcome.state is PipelineState.DONE
        assert outcome.result.image_bytes == generation_result.image_bytes
        assert outcome.quota.used_count == 3
        assert outcome.artifact.prompt_text == "a red bicycle"
        assert outcome.artifact.id in records.rows
        assert outcome.warnings == []
        assert generator.calls == [("generate", "a red bicycle", (Modality.TEXT, Modality.IMAGE))]
        assert [event.state for event in events] == [
            PipelineState.VALIDATING,
            PipelineState.QUOTA_CHECK,
            PipelineState.CALLING,
            PipelineState.DECODING,
            PipelineState.PERSISTING,
            PipelineState.DONE,
        ]
        assert events[0].previous is PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_edit_passes_source_image(self, generation_result, tracker, png_bytes):
        generator = FakeGenerator(generation_result)
        orchestrator = Orchestrator(generator, tracker)

        request = GenerationRequest("make it blue", mode=Mode.EDIT, source_image=Blob(png_bytes, "image/png"))
        outcome = await orchestrator.run(request, DEVICE)

        assert outcome.succeeded
        assert generator.calls == [("edit", "make it blue", png_bytes, "image/png")]
        assert outcome.artifact is None

    @pytest.mark.asyncio
    async def test_no_result_does_not_count(self, tracker, anonymous_store):
        orchestrator = Orchestrator(FakeGenerator(None), tracker)
        events = record_events(orchestrator)

        outcome = await orchestrator.run(GenerationRequest("a red bicycle"), DEVICE)

        assert outcome.no_result
        assert outcome.error is None
        assert anonymous_store.get(DEVICE.id) == 0
        assert PipelineState.PERSISTING not in [event.state for event in events]

    @pytest.mark.asyncio
    async def test_quota_exceeded_skips_generation(self, generation_result, tracker, anonymous_store):
        anonymous_store.set(DEVICE.id, 5)
        generator = FakeGenerator(generation_result)
        orchestrator = Orchestrator(generator, tracker)
        events = record_events(orchestrator)

        outcome = await orchestrator.run(GenerationRequest("a red bicycle"), DEVICE)

        assert outcome.state is PipelineState.FAILED
        assert isinstance(outcome.error, QuotaExceeded)
        assert outcome.failed_in is PipelineState.QUOTA_CHECK
        assert generator.calls == []
        assert events[-1].failure_kind == "quota_exceeded"

    @pytest.mark.asyncio
    async def test_validation_failure(self, generation_result, tracker):
        generator = FakeGenerator(generation_result)
        outcome = await Orchestrator(generator, tracker).run(GenerationRequest("   "), DEVICE)

        assert isinstance(outcome.error, ValidationError)
        assert outcome.failed_in is PipelineState.VALIDATING
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_generation_error_does_not_count(self, tracker, anonymous_store):
        generator = FakeGenerator(error=GenerationError("upstream down"))
        outcome = await Orchestrator(generator, tracker).run(GenerationRequest("a red bicycle"), DEVICE)

        assert isinstance(outcome.error, GenerationError)
        assert outcome.failed_in is PipelineState.CALLING
        assert anonymous_store.get(DEVICE.id) == 0

    @pytest.mark.asyncio
    async def test_empty_image_is_decode_error(self, tracker, anonymous_store):
        generator = FakeGenerator(GenerationResult(image_bytes=b"", mime_type="image/png"))
        outcome = await Orchestrator(generator, tracker).run(GenerationRequest("a red bicycle"), DEVICE)

        assert isinstance(outcome.error, DecodeError)
        assert outcome.failed_in is PipelineState.DECODING
        assert anonymous_store.get(DEVICE.id) == 0

    @pytest.mark.asyncio
    async def test_partial_persistence_failure_keeps_image(self, generation_result, tracker, ledger, gateway, records):
        records.fail_insert = True
        orchestrator = Orchestrator(FakeGenerator(generation_result), tracker, gateway)

        outcome = await orchestrator.run(GenerationRequest("a red bicycle"), USER)

        assert outcome.succeeded
        assert outcome.result == generation_result
        assert outcome.artifact is None
        assert outcome.quota.used_count == 1
        assert len(ledger.entries) == 1
        assert [type(warning) for warning in outcome.warnings] == [PersistencePartialFailure]

    @pytest.mark.asyncio
    async def test_unexpected_save_error_becomes_warning(self, generation_result, tracker):
        orchestrator = Orchestrator(FakeGenerator(generation_result), tracker, ExplodingSaver())

        outcome = await orchestrator.run(GenerationRequest("a red bicycle"), USER)

        assert outcome.succeeded
        assert isinstance(outcome.warnings[0].__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_anonymous_result_is_not_saved(self, generation_result, tracker, storage, records):
        gateway = ArtifactGateway(storage, records, FakeAuth(None), BUCKET)
        orchestrator = Orchestrator(FakeGenerator(generation_result), tracker, gateway)

        outcome = await orchestrator.run(GenerationRequest("a red bicycle"), DEVICE)

        assert outcome.succeeded
        assert outcome.quota.used_count == 1
        assert storage.uploads == []
        assert isinstance(outcome.warnings[0], NotAuthenticated)

    @pytest.mark.asyncio
    async def test_timeout(self, generation_result, tracker, anonymous_store):
        generator = SlowGenerator(generation_result, delay=0.2)
        orchestrator = Orchestrator(generator, tracker, timeout_seconds=0.01)

        outcome = await orchestrator.run(GenerationRequest("a red bicycle"), DEVICE)

        assert isinstance(outcome.error, GenerationError)
        assert outcome.error.reason == "timeout"
        assert anonymous_store.get(DEVICE.id) == 0
        await asyncio.sleep(0.3)
        assert generator.finished is True

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, tracker):
        cause = ZeroDivisionError("boom")
        outcome = await Orchestrator(FakeGenerator(error=cause), tracker).run(GenerationRequest("a bike"), DEVICE)

        assert outcome.state is PipelineState.FAILED
        assert isinstance(outcome.error, GenerationError)
        assert outcome.error.__cause__ is cause

    @pytest.mark.asyncio
    async def test_quota_unavailable(self, generation_result, tracker, ledger):
        ledger.fail = True
        generator = FakeGenerator(generation_result)

        outcome = await Orchestrator(generator, tracker).run(GenerationRequest("a red bicycle"), USER)

        assert isinstance(outcome.error, QuotaUnavailable)
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self, generation_result, tracker):
        orchestrator = Orchestrator(FakeGenerator(generation_result), tracker)
        events = []
        unsubscribe = orchestrator.subscribe(events.append)
        unsubscribe()

        await orchestrator.run(GenerationRequest("a red bicycle"), DEVICE)

        assert events == []

    @pytest.mark.asyncio
    async def test_failure_after_timeout_is_logged(self, tracker, caplog):
        orchestrator = Orchestrator(LateFailingGenerator(delay=0.05), tracker, timeout_seconds=0.01)

        with caplog.at_level(logging.WARNING, logger="image-studio.pipeline"):
            outcome = await orchestrator.run(GenerationRequest("a red bicycle"), DEVICE)
            assert outcome.error.reason == "timeout"
            await asyncio.sleep(0.1)

        assert "upstream 500 after timeout" in caplog.text

    @pytest.mark.asyncio
    async def test_base64_result_decoded_in_decoding_step(self, tracker, png_bytes):
        encoded = GenerationResult(image_bytes=base64.b64encode(png_bytes).decode(), mime_type="image/png")

        outcome = await Orchestrator(FakeGenerator(encoded), tracker).run(GenerationRequest("a red bicycle"), DEVICE)

        assert outcome.succeeded
        assert outcome.result.image_bytes == png_bytes

    @pytest.mark.asyncio
    async def test_undecodable_result_fails_in_decoding(self, tracker, anonymous_store):
        garbage = GenerationResult(image_bytes="@@@@!!!!", mime_type="image/png")

        outcome = await Orchestrator(FakeGenerator(garbage), tracker).run(GenerationRequest("a red bicycle"), DEVICE)

        assert isinstance(outcome.error, DecodeError)
        assert outcome.failed_in is PipelineState.DECODING
        assert anonymous_store.get(DEVICE.id) == 0

    @pytest.mark.asyncio
    async def test_edit_call_without_source_is_rejected(self, generation_result, tracker):
        generator = FakeGenerator(generation_result)
        orchestrator = Orchestrator(generator, tracker)

        with pytest.raises(ValidationError):
            await orchestrator._call(GenerationRequest("make it blue", mode=Mode.EDIT))

        assert generator.calls == []

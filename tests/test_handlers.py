# ============================================================================
# EXAMPLE HANDLER TESTS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Tests - Sample job and stage handlers
# PURPOSE: Call example handlers directly with hand-built contexts
# CREATED: 12 OCT 2026
# ============================================================================
"""
Example Handler Tests

Covers:
1. echo / sleep / fail leaf handlers
2. demo stage handlers: payload checks, artifact reuse, recorded inverses,
   review decisions, injected publish failures

Run with:
    pytest tests/test_handlers.py -v
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from core.contracts import ObjectCategory
from core.errors import ConfigError, FatalError, InvalidArgument, LeaseLost, TransientError
from core.models import JobRun
from handlers.examples import (
    echo_handler,
    embed_stage,
    fail_handler,
    prepare_stage,
    publish_stage,
    review_stage,
    sleep_handler,
    upload_stage,
)
from handlers.registry import HandlerContext, Outcome
from infrastructure.adapters import Adapters


def job_ctx(payload=None, **kwargs):
    job = JobRun(owner_user_id=uuid4(), job_type="echo", payload=payload or {}, attempts=1)
    return HandlerContext(job=job, **kwargs)


def stage_ctx(payload=None, outputs=None, artifacts=None, adapters=None, decision=None):
    """Stand-in for orchestrator.context.StageContext."""
    outputs = outputs or {}
    artifacts = list(artifacts or [])
    return SimpleNamespace(
        payload=payload or {},
        job_id=uuid4(),
        owner_user_id=uuid4(),
        saga_id=uuid4(),
        adapters=adapters,
        decision=decision,
        artifacts=artifacts,
        outputs_of=lambda name: dict(outputs.get(name, {})),
        has_artifact=lambda name: any(a.get("name") == name for a in artifacts),
        record_action=AsyncMock(),
    )


@pytest.fixture
def adapters():
    objects = MagicMock()
    objects.upload = AsyncMock()
    objects.public_url = MagicMock(return_value="https://cdn.test/materials/x")
    vectors = MagicMock()
    vectors.upsert = AsyncMock(return_value=2)
    llm = MagicMock()
    llm.embed = AsyncMock(side_effect=lambda batch: [[0.1, 0.2] for _ in batch])
    return Adapters(objects=objects, vectors=vectors, llm=llm)


# ============================================================================
# LEAF HANDLERS
# ============================================================================

class TestLeafHandlers:

    def test_echo(self):
        progress = AsyncMock()
        ctx = job_ctx({"a": 1}, progress_callback=progress)

        result = asyncio.run(echo_handler(ctx))

        assert result.success
        assert result.output["echoed_payload"] == {"a": 1}
        assert result.output["attempt"] == 1
        progress.assert_awaited_once_with("echo", 50, "Echoing")

    def test_sleep(self):
        result = asyncio.run(sleep_handler(job_ctx({"duration_seconds": 0.02})))
        assert result.output == {"slept_for": 0.02}

    def test_sleep_honours_cancel(self):
        ctx = job_ctx({"duration_seconds": 5})
        ctx.cancel_event.set()
        with pytest.raises(LeaseLost):
            asyncio.run(sleep_handler(ctx))

    def test_fail_is_retryable_by_default(self):
        result = asyncio.run(fail_handler(job_ctx({"error_message": "nope"})))
        assert result.outcome == Outcome.FAILED
        assert result.retryable
        assert result.error_message == "nope"

    def test_fail_fatal(self):
        with pytest.raises(FatalError):
            asyncio.run(fail_handler(job_ctx({"fatal": True})))


# ============================================================================
# DEMO STAGES
# ============================================================================

class TestDemoStages:

    def test_prepare(self):
        out = asyncio.run(prepare_stage(stage_ctx({"name": "doc.txt", "content": "héllo"})))
        assert out["name"] == "doc.txt"
        assert out["size"] == 6
        assert len(out["digest"]) == 64

    @pytest.mark.parametrize("payload", [{}, {"name": ""}, {"name": 7}])
    def test_prepare_rejects_bad_name(self, payload):
        with pytest.raises(InvalidArgument):
            asyncio.run(prepare_stage(stage_ctx(payload)))

    def test_upload_records_inverse(self, adapters):
        ctx = stage_ctx({"content": "hi"}, outputs={"prepare": {"name": "doc.txt"}}, adapters=adapters)

        out = asyncio.run(upload_stage(ctx))

        key = f"staging/saga/{ctx.saga_id}/doc.txt"
        assert out == {"key": key, "reused": False}
        adapters.objects.upload.assert_awaited_once_with(
            ObjectCategory.MATERIAL, key, b"hi", content_type="text/plain"
        )
        ctx.record_action.assert_awaited_once_with(
            "object_delete_key",
            {"category": "material", "key": key},
            artifact={"name": "object", "key": key},
        )

    def test_upload_reuses_artifact(self, adapters):
        ctx = stage_ctx(
            outputs={"prepare": {"name": "doc.txt"}},
            artifacts=[{"name": "object", "key": "k"}],
            adapters=adapters,
        )
        assert asyncio.run(upload_stage(ctx))["reused"] is True
        adapters.objects.upload.assert_not_awaited()

    def test_upload_without_object_store(self):
        ctx = stage_ctx(outputs={"prepare": {"name": "doc.txt"}}, adapters=Adapters())
        with pytest.raises(ConfigError):
            asyncio.run(upload_stage(ctx))

    def test_embed_one_vector_per_paragraph(self, adapters):
        ctx = stage_ctx({"content": "one\n\ntwo\n\n  ", "namespace": "ns"}, adapters=adapters)

        out = asyncio.run(embed_stage(ctx))

        assert out["vector_ids"] == [f"{ctx.job_id}:0", f"{ctx.job_id}:1"]
        namespace, vectors = adapters.vectors.upsert.await_args.args
        assert namespace == "ns"
        assert [v["id"] for v in vectors] == out["vector_ids"]
        kind, payload = ctx.record_action.await_args.args
        assert kind == "vector_delete_ids"
        assert payload == {"namespace": "ns", "ids": out["vector_ids"]}

    def test_embed_empty_content(self, adapters):
        out = asyncio.run(embed_stage(stage_ctx({"content": ""}, adapters=adapters)))
        assert out == {"vector_ids": [], "reused": False}
        adapters.vectors.upsert.assert_not_awaited()

    def test_embed_reuses_artifact(self, adapters):
        ctx = stage_ctx(artifacts=[{"name": "vectors", "ids": ["a"]}], adapters=adapters)
        assert asyncio.run(embed_stage(ctx)) == {"vector_ids": ["a"], "reused": True}

    def test_review_waits_without_decision(self):
        ctx = stage_ctx(outputs={"prepare": {"name": "doc.txt"}})
        result = asyncio.run(review_stage(ctx))
        assert result.wait_prompt["question"] == "Publish doc.txt?"

    def test_review_approved(self):
        result = asyncio.run(review_stage(stage_ctx(decision={"approved": True, "note": "ok"})))
        assert result.wait_prompt is None
        assert result.outputs == {"approved": True, "note": "ok"}

    def test_review_rejected(self):
        with pytest.raises(FatalError, match="rejected"):
            asyncio.run(review_stage(stage_ctx(decision={"approved": False})))

    def test_publish_url(self, adapters):
        ctx = stage_ctx(outputs={"upload": {"key": "staging/x"}}, adapters=adapters)
        assert asyncio.run(publish_stage(ctx)) == {"published": True, "url": "https://cdn.test/materials/x"}

    @pytest.mark.parametrize("mode, error", [("fatal", FatalError), ("transient", TransientError)])
    def test_publish_injected_failures(self, mode, error):
        with pytest.raises(error):
            asyncio.run(publish_stage(stage_ctx({"fail_publish": mode})))

# ============================================================================
# EXAMPLE HANDLERS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Examples - Sample job and stage handlers
# PURPOSE: Demonstrate handler registration and the demo_build pipeline
# CREATED: 12 OCT 2026
# ============================================================================
"""
Example Handlers

Sample implementations showing how to create handlers.
These can be used for testing and as templates for real handlers.

Leaf job handlers:
- echo: returns its payload
- sleep: sleeps, honouring cancel between ticks
- fail: fails transiently or fatally on demand

Stage handlers used by pipelines/demo_build.yaml:
- prepare: validates the payload
- upload: writes a staged object and records its inverse
- embed: upserts vectors and records their inverse
- review: parks until a user approves or rejects
- publish: final stage, fails on demand to exercise compensation
"""

import asyncio
import hashlib
import logging
from typing import Any, Dict

from core.contracts import ObjectCategory, SagaActionKind
from core.errors import ConfigError, FatalError, InvalidArgument, TransientError
from core.models import staging_prefix
from handlers.registry import (
    register_handler,
    register_stage,
    HandlerContext,
    HandlerResult,
    StageResult,
)

logger = logging.getLogger(__name__)


# ============================================================================
# BASIC HANDLERS
# ============================================================================

@register_handler(
    "echo",
    description="Echoes the payload back as output",
    timeout_seconds=60,
)
async def echo_handler(ctx: HandlerContext) -> HandlerResult:
    """Simple echo handler for testing."""
    logger.info(f"Echo handler called with payload: {ctx.payload}")
    await ctx.report_progress("echo", 50, "Echoing")
    return HandlerResult.success_result(
        output={
            "echoed_payload": ctx.payload,
            "job_id": str(ctx.job_id),
            "attempt": ctx.attempt,
        }
    )


@register_handler(
    "sleep",
    description="Sleeps for specified duration (for testing)",
    timeout_seconds=300,
)
async def sleep_handler(ctx: HandlerContext) -> HandlerResult:
    """
    Sleep handler for testing delays, timeouts and cancel.

    Payload:
        duration_seconds: How long to sleep (default 1)
    """
    duration = float(ctx.payload.get("duration_seconds", 1))
    logger.info(f"Sleeping for {duration} seconds")

    elapsed = 0.0
    while elapsed < duration:
        ctx.raise_if_cancelled()
        step = min(0.1, duration - elapsed)
        await asyncio.sleep(step)
        elapsed += step

    return HandlerResult.success_result(output={"slept_for": duration})


@register_handler(
    "fail",
    description="Always fails (for testing error handling)",
    timeout_seconds=30,
)
async def fail_handler(ctx: HandlerContext) -> HandlerResult:
    """
    Handler that always fails.

    Payload:
        error_message: text of the failure
        fatal: true for a non-retryable failure
    """
    error_message = ctx.payload.get("error_message", "Intentional failure for testing")
    if ctx.payload.get("fatal"):
        raise FatalError(error_message, operation="fail", entity_id=ctx.job_id)
    return HandlerResult.failure_result(error_message, retryable=True)


# ============================================================================
# DEMO PIPELINE STAGES
# ============================================================================

@register_stage("prepare")
async def prepare_stage(ctx) -> Dict[str, Any]:
    """Check the payload and derive the object key."""
    name = ctx.payload.get("name")
    if not name or not isinstance(name, str):
        raise InvalidArgument("payload.name is required", operation="stage.prepare")
    content = str(ctx.payload.get("content", ""))
    return {
        "name": name,
        "size": len(content.encode("utf-8")),
        "digest": hashlib.sha256(content.encode("utf-8")).hexdigest(),
    }


@register_stage("upload")
async def upload_stage(ctx) -> Dict[str, Any]:
    """
    Upload the content under the saga's staging prefix.

    The object key is recorded in the same transaction as the artifact, so
    a re-run after a crash finds it and skips the upload.
    """
    prepared = ctx.outputs_of("prepare")
    key = f"{staging_prefix(ctx.saga_id)}{prepared['name']}"

    if ctx.has_artifact("object"):
        logger.info(f"Stage upload: {key} already uploaded")
        return {"key": key, "reused": True}

    objects = ctx.adapters.objects if ctx.adapters else None
    if objects is None:
        raise ConfigError("object store adapter is not configured", operation="stage.upload")

    content = str(ctx.payload.get("content", "")).encode("utf-8")
    await objects.upload(ObjectCategory.MATERIAL, key, content, content_type="text/plain")
    await ctx.record_action(
        SagaActionKind.OBJECT_DELETE_KEY.value,
        {"category": ObjectCategory.MATERIAL.value, "key": key},
        artifact={"name": "object", "key": key},
    )
    return {"key": key, "reused": False}


@register_stage("embed")
async def embed_stage(ctx) -> Dict[str, Any]:
    """Upsert one vector per paragraph and record their ids."""
    if ctx.has_artifact("vectors"):
        entry = next(a for a in ctx.artifacts if a.get("name") == "vectors")
        return {"vector_ids": entry["ids"], "reused": True}

    vectors = ctx.adapters.vectors if ctx.adapters else None
    if vectors is None:
        raise ConfigError("vector store adapter is not configured", operation="stage.embed")

    namespace = str(ctx.payload.get("namespace") or ctx.owner_user_id)
    paragraphs = [p for p in str(ctx.payload.get("content", "")).split("\n\n") if p.strip()]
    if not paragraphs:
        return {"vector_ids": [], "reused": False}

    llm = ctx.adapters.llm
    if llm is None:
        raise ConfigError("llm adapter is not configured", operation="stage.embed")
    embeddings = await llm.embed(paragraphs)

    ids = [f"{ctx.job_id}:{i}" for i in range(len(paragraphs))]
    await vectors.upsert(
        namespace,
        [{"id": vid, "values": emb, "metadata": {"job_id": str(ctx.job_id)}} for vid, emb in zip(ids, embeddings)],
    )
    await ctx.record_action(
        SagaActionKind.VECTOR_DELETE_IDS.value,
        {"namespace": namespace, "ids": ids},
        artifact={"name": "vectors", "ids": ids},
    )
    return {"vector_ids": ids, "reused": False}


@register_stage("review")
async def review_stage(ctx):
    """Wait for {"approved": bool}; a rejection fails the pipeline."""
    decision = ctx.decision
    if decision is None:
        prepared = ctx.outputs_of("prepare")
        return StageResult.wait({
            "question": f"Publish {prepared.get('name')}?",
            "options": ["approve", "reject"],
        })
    if not decision.get("approved"):
        raise FatalError("rejected by reviewer", operation="stage.review", entity_id=ctx.job_id)
    return StageResult.done({"approved": True, "note": decision.get("note", "")})


@register_stage("publish")
async def publish_stage(ctx) -> Dict[str, Any]:
    """Final stage; payload.fail_publish = "fatal" / "transient" injects failure."""
    mode = ctx.payload.get("fail_publish")
    if mode == "fatal":
        raise FatalError("publish refused", operation="stage.publish", entity_id=ctx.job_id)
    if mode == "transient":
        raise TransientError("publish target unavailable", operation="stage.publish", entity_id=ctx.job_id)

    upload = ctx.outputs_of("upload")
    url = None
    if ctx.adapters and ctx.adapters.objects and upload.get("key"):
        url = ctx.adapters.objects.public_url(ObjectCategory.MATERIAL, upload["key"])
    return {"published": True, "url": url}


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "echo_handler",
    "sleep_handler",
    "fail_handler",
    "prepare_stage",
    "upload_stage",
    "embed_stage",
    "review_stage",
    "publish_stage",
]

# ============================================================================
# PIPELINE DEFINITION TESTS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Tests - Pipeline models, evaluator, loader and registry
# PURPOSE: Stage DAG validation, runnable rules, progress, YAML loading
# CREATED: 12 OCT 2026
# ============================================================================
"""
Pipeline Definition Tests

Covers:
1. StageDefinition / PipelineDefinition validation and implicit depends_on
2. StageEvaluator: cycles, topological order, runnable stages, progress
3. OrchestratorState round-trip and restart reset
4. PipelineService: YAML loading, broken files skipped, install checks
5. Registry: duplicates and stage handler validation

Run with:
    pytest tests/test_pipelines.py -v
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError

from core.contracts import StageMode, StageStatus, utc_now
from core.errors import ConfigError
from core.models import OrchestratorState, PipelineDefinition, StageDefinition
from core.models.orchestrator_state import reset_result_for_restart
from handlers.registry import (
    DuplicateHandlerError,
    clear_handlers,
    get_handler,
    get_pipeline,
    max_attempts_for,
    register_handler,
    register_pipeline,
    register_stage,
    validate_stage_handlers,
)
from orchestrator.engine.evaluator import StageEvaluator
from services.pipeline_service import PipelineService


@pytest.fixture(autouse=True)
def clean_registry():
    clear_handlers()
    yield
    clear_handlers()


@pytest.fixture
def evaluator():
    return StageEvaluator()


def pipeline(*stages, job_type="test_pipeline"):
    return PipelineDefinition(job_type=job_type, stages=list(stages))


def state_for(pipe, **statuses):
    state = StageEvaluator().init_state(pipe, OrchestratorState())
    for name, status in statuses.items():
        state.stages[name].status = status
    return state


DEMO = PipelineDefinition(
    job_type="demo",
    stages=[
        StageDefinition(name="prepare"),
        StageDefinition(name="upload", weight=2),
        StageDefinition(name="embed", weight=3),
        StageDefinition(
            name="index", mode=StageMode.CHILD, child_job_type="echo",
            depends_on=["upload"], parallel_safe=True,
        ),
        StageDefinition(name="review", depends_on="embed"),
        StageDefinition(name="publish", depends_on=["review", "index"], compensating=True),
    ],
)


async def noop_stage(ctx):
    return None


# ============================================================================
# MODELS
# ============================================================================

class TestDefinitions:

    def test_implicit_previous_stage_dependency(self):
        deps = DEMO.dependencies()
        assert deps["prepare"] == []
        assert deps["upload"] == ["prepare"]
        assert deps["embed"] == ["upload"]
        assert deps["review"] == ["embed"]
        assert deps["publish"] == ["review", "index"]

    def test_explicit_empty_list_makes_a_root(self):
        pipe = pipeline(StageDefinition(name="a"), StageDefinition(name="b", depends_on=[]))
        assert pipe.dependencies()["b"] == []

    def test_child_mode_needs_job_type(self):
        with pytest.raises(ValidationError):
            StageDefinition(name="index", mode=StageMode.CHILD)

    @pytest.mark.parametrize("name", ["", "Has Space", "UPPER", "x" * 65])
    def test_bad_stage_names(self, name):
        with pytest.raises(ValidationError):
            StageDefinition(name=name)

    def test_handler_name_defaults_to_stage(self):
        assert StageDefinition(name="upload").handler_name == "upload"
        assert StageDefinition(name="upload", handler="put_blob").handler_name == "put_blob"

    def test_pipeline_needs_stages(self):
        with pytest.raises(ValidationError):
            PipelineDefinition(job_type="empty", stages=[])

    def test_structure_errors(self):
        pipe = pipeline(
            StageDefinition(name="a"),
            StageDefinition(name="a"),
            StageDefinition(name="b", depends_on=["ghost"]),
        )
        errors = pipe.validate_structure()
        assert "Duplicate stage name: a" in errors
        assert any("non-existent stage: ghost" in e for e in errors)

    def test_total_weight(self):
        assert DEMO.total_weight == 9


# ============================================================================
# EVALUATOR
# ============================================================================

class TestEvaluator:

    def test_cycle_detected(self, evaluator):
        pipe = pipeline(
            StageDefinition(name="a", depends_on=["b"]),
            StageDefinition(name="b", depends_on=["a"]),
        )
        errors = evaluator.validate_pipeline(pipe)
        assert len(errors) == 1
        assert "Cycle detected" in errors[0]

    def test_self_dependency(self, evaluator):
        pipe = pipeline(StageDefinition(name="a", depends_on=["a"]))
        assert "Stage 'a' depends on itself" in evaluator.validate_pipeline(pipe)

    def test_valid_pipeline(self, evaluator):
        assert evaluator.validate_pipeline(DEMO) == []

    def test_topological_order(self, evaluator):
        assert evaluator.topological_order(DEMO) == [
            "prepare", "upload", "embed", "index", "review", "publish",
        ]

    def test_init_state_keeps_existing_entries(self, evaluator):
        state = OrchestratorState()
        state.ensure_stage("prepare").status = StageStatus.SUCCEEDED
        evaluator.init_state(DEMO, state)

        assert state.stages["prepare"].status == StageStatus.SUCCEEDED
        assert state.stages["index"].mode == StageMode.CHILD
        assert len(state.stages) == 6

    def test_first_stage_runnable(self, evaluator):
        assert evaluator.runnable_stages(DEMO, state_for(DEMO)) == ["prepare"]

    def test_fan_out_in_declaration_order(self, evaluator):
        state = state_for(DEMO, prepare=StageStatus.SUCCEEDED, upload=StageStatus.SUCCEEDED)
        assert evaluator.runnable_stages(DEMO, state) == ["embed", "index"]

    def test_join_waits_for_every_prerequisite(self, evaluator):
        state = state_for(
            DEMO,
            prepare=StageStatus.SUCCEEDED,
            upload=StageStatus.SUCCEEDED,
            embed=StageStatus.SUCCEEDED,
            review=StageStatus.SUCCEEDED,
            index=StageStatus.RUNNING,
        )
        assert evaluator.runnable_stages(DEMO, state) == []
        state.stages["index"].status = StageStatus.SUCCEEDED
        assert evaluator.runnable_stages(DEMO, state) == ["publish"]

    def test_failed_prerequisite_blocks(self, evaluator):
        state = state_for(DEMO, prepare=StageStatus.FAILED)
        assert evaluator.runnable_stages(DEMO, state) == []
        assert evaluator.failed_stages(state) == ["prepare"]

    def test_waiting_stage_only_lets_parallel_safe_start(self, evaluator):
        pipe = pipeline(
            StageDefinition(name="ask"),
            StageDefinition(name="side", depends_on=[], parallel_safe=True),
            StageDefinition(name="other", depends_on=[]),
        )
        state = state_for(pipe, ask=StageStatus.WAITING_USER)
        assert evaluator.runnable_stages(pipe, state) == ["side"]

    def test_backoff_hides_stage_until_deadline(self, evaluator):
        now = utc_now()
        state = state_for(DEMO)
        state.stages["prepare"].wait_until = now + timedelta(seconds=30)

        assert evaluator.runnable_stages(DEMO, state, now=now) == []
        assert evaluator.next_wake(state) == now + timedelta(seconds=30)
        assert evaluator.runnable_stages(DEMO, state, now=now + timedelta(seconds=31)) == ["prepare"]

    def test_running_children(self, evaluator):
        state = state_for(DEMO, index=StageStatus.RUNNING)
        assert evaluator.running_children(DEMO, state) == []
        state.stages["index"].child_job_id = uuid4()
        assert evaluator.running_children(DEMO, state) == ["index"]

    def test_is_complete(self, evaluator):
        state = state_for(DEMO, **{name: StageStatus.SUCCEEDED for name in DEMO.stage_names()})
        assert evaluator.is_complete(DEMO, state)
        state.stages["publish"].status = StageStatus.RUNNING
        assert not evaluator.is_complete(DEMO, state)

    def test_progress_is_weighted(self, evaluator):
        state = state_for(DEMO, prepare=StageStatus.SUCCEEDED, upload=StageStatus.SUCCEEDED)
        assert evaluator.progress(DEMO, state) == 33

    @pytest.mark.parametrize("weights, done, expected", [
        ((1, 7), 1, 13),
        ((1, 1, 1), 2, 67),
        ((1, 1), 2, 100),
        ((1, 1), 0, 0),
    ])
    def test_progress_rounds_half_up(self, evaluator, weights, done, expected):
        stages = [StageDefinition(name=f"s{i}", weight=w) for i, w in enumerate(weights)]
        pipe = pipeline(*stages)
        state = state_for(pipe, **{f"s{i}": StageStatus.SUCCEEDED for i in range(done)})
        assert evaluator.progress(pipe, state) == expected


# ============================================================================
# STATE
# ============================================================================

class TestOrchestratorState:

    def test_non_orchestrated_result(self):
        assert not OrchestratorState.is_orchestrated({"chunks": 3})
        assert OrchestratorState.from_result(None).stages == {}

    def test_round_trip_keeps_unknown_keys(self):
        child = uuid4()
        doc = {
            "version": 1,
            "stages": {"index": {"status": "running", "mode": "child", "child_job_id": str(child), "shard": 4}},
            "last_progress": 40,
        }
        state = OrchestratorState.from_result(doc)
        assert state.stages["index"].child_job_id == child

        again = state.to_result()
        assert again["stages"]["index"]["shard"] == 4
        assert again["stages"]["index"]["child_job_id"] == str(child)

    def test_restart_keeps_succeeded_stages(self):
        state = OrchestratorState()
        state.ensure_stage("prepare").status = StageStatus.SUCCEEDED
        failed = state.ensure_stage("upload")
        failed.status = StageStatus.FAILED
        failed.attempts = 3
        failed.last_error = "boom"
        failed.child_job_id = uuid4()

        state.reset_for_restart()

        assert state.stages["prepare"].status == StageStatus.SUCCEEDED
        assert failed.status == StageStatus.PENDING
        assert failed.attempts == 0
        assert failed.last_error is None
        assert failed.child_job_id is None

    def test_restart_after_compensation_reruns_everything(self):
        state = OrchestratorState(last_progress=50, compensation={"failed_stage": "publish", "status": "compensated"})
        done = state.ensure_stage("upload")
        done.status = StageStatus.SUCCEEDED
        done.outputs = {"key": "a.pdf"}

        state.reset_for_restart()

        assert done.status == StageStatus.PENDING
        assert done.outputs == {}
        assert state.compensation is None
        assert state.last_progress == 0

    def test_reset_result_drops_outputs_and_plain_results(self):
        doc = {"stages": {"a": {"status": "succeeded"}}, "outputs": {"a": {}}}
        assert "outputs" not in reset_result_for_restart(doc)
        assert reset_result_for_restart({"chunks": 3}) == {}


# ============================================================================
# LOADER / REGISTRY
# ============================================================================

GOOD_YAML = """
job_type: good_pipe
stages:
  - name: first
  - name: second
"""

CYCLE_YAML = """
job_type: cycle_pipe
stages:
  - name: a
    depends_on: b
  - name: b
    depends_on: a
"""


class TestPipelineService:

    def test_loads_bundled_demo_build(self):
        service = PipelineService()
        demo = service.get_or_raise("demo_build")

        assert demo.max_attempts == 10
        assert demo.get_stage("index").mode == StageMode.CHILD
        assert demo.get_stage("publish").compensating
        assert demo.get_stage("embed").max_attempts == 4
        assert StageEvaluator().validate_pipeline(demo) == []

    def test_broken_files_are_skipped(self, tmp_path):
        (tmp_path / "good.yaml").write_text(GOOD_YAML)
        (tmp_path / "cycle.yaml").write_text(CYCLE_YAML)
        (tmp_path / "list.yml").write_text("- just\n- a list\n")
        (tmp_path / "syntax.yaml").write_text("job_type: [unclosed\n")

        service = PipelineService(str(tmp_path))

        assert service.load_all() == 1
        assert [p.job_type for p in service.list_all()] == ["good_pipe"]
        assert service.get("cycle_pipe") is None

    def test_missing_directory(self, tmp_path):
        assert PipelineService(str(tmp_path / "nope")).load_all() == 0

    def test_unknown_pipeline(self, tmp_path):
        with pytest.raises(ConfigError):
            PipelineService(str(tmp_path)).get_or_raise("nope")

    def test_register_rejects_cycles(self, tmp_path):
        service = PipelineService(str(tmp_path))
        cyclic = pipeline(
            StageDefinition(name="a", depends_on=["b"]),
            StageDefinition(name="b", depends_on=["a"]),
        )
        with pytest.raises(ConfigError):
            service.register(cyclic)

    def test_install_refuses_missing_stage_handlers(self, tmp_path):
        (tmp_path / "good.yaml").write_text(GOOD_YAML)
        service = PipelineService(str(tmp_path))
        register_stage("first")(noop_stage)

        with pytest.raises(ConfigError, match="second"):
            service.install()
        assert get_pipeline("good_pipe") is None

    def test_install_registers_job_type(self, tmp_path):
        (tmp_path / "good.yaml").write_text(GOOD_YAML)
        service = PipelineService(str(tmp_path))
        register_stage("first")(noop_stage)
        register_stage("second")(noop_stage)

        assert service.install() == ["good_pipe"]
        assert get_handler("good_pipe") is not None
        # Idempotent
        assert service.install() == ["good_pipe"]


class TestRegistry:

    def test_duplicate_handler(self):
        register_handler("echo")(noop_stage)
        with pytest.raises(DuplicateHandlerError):
            register_handler("echo")(noop_stage)

    def test_duplicate_stage(self):
        register_stage("upload")(noop_stage)
        with pytest.raises(DuplicateHandlerError):
            register_stage("upload")(noop_stage)

    def test_validate_stage_handlers_ignores_child_stages(self):
        register_stage("prepare")(noop_stage)
        register_stage("upload")(noop_stage)
        assert validate_stage_handlers(DEMO) == ["embed", "review", "publish"]

    def test_pipeline_carries_root_budget(self):
        register_pipeline(DEMO.model_copy(update={"max_attempts": 5}))
        assert max_attempts_for("demo") == 5
        with pytest.raises(DuplicateHandlerError):
            register_pipeline(DEMO)

# ============================================================================
# PIPELINE SERVICE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Pipeline definition management
# PURPOSE: Load, validate and register orchestrated job types
# CREATED: 12 OCT 2026
# ============================================================================
"""
Pipeline Service

Loads pipeline definitions from YAML files and registers them with the
handler registry so the worker can dispatch their job types.

Pipeline files are stored in the pipelines/ directory:

    job_type: demo_build
    version: 1
    stages:
      - name: upload
        compensating: true
      - name: review
        depends_on: upload
      - name: lessons
        mode: child
        child_job_type: demo_lessons
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from core.errors import ConfigError
from core.models import PipelineDefinition
from handlers.registry import get_pipeline, register_pipeline, validate_stage_handlers
from orchestrator.engine.evaluator import validate_pipeline

logger = logging.getLogger(__name__)


class PipelineService:
    """Service for loading and managing pipeline definitions."""

    def __init__(self, pipelines_dir: Optional[str] = None):
        """
        Initialize pipeline service.

        Args:
            pipelines_dir: Directory containing pipeline YAML files.
                          Defaults to ./pipelines/
        """
        if pipelines_dir:
            self.pipelines_dir = Path(pipelines_dir)
        else:
            self.pipelines_dir = Path(__file__).parent.parent / "pipelines"

        self._cache: Dict[str, PipelineDefinition] = {}
        self._loaded = False

    def load_all(self) -> int:
        """
        Load every *.yaml / *.yml pipeline in the directory.

        A broken file is logged and skipped.

        Returns:
            Number of pipelines loaded
        """
        if not self.pipelines_dir.exists():
            logger.warning(f"Pipelines directory not found: {self.pipelines_dir}")
            self._loaded = True
            return 0

        count = 0
        files = sorted(self.pipelines_dir.glob("*.yaml")) + sorted(self.pipelines_dir.glob("*.yml"))
        for yaml_file in files:
            try:
                pipeline = self._load_yaml(yaml_file)
            except (ConfigError, OSError, yaml.YAMLError) as e:
                logger.error(f"Failed to load {yaml_file}: {e}")
                continue
            self._cache[pipeline.job_type] = pipeline
            count += 1
            logger.info(f"Loaded pipeline: {pipeline.job_type} v{pipeline.version}")

        self._loaded = True
        logger.info(f"Loaded {count} pipelines from {self.pipelines_dir}")
        return count

    def get(self, job_type: str) -> Optional[PipelineDefinition]:
        if not self._loaded:
            self.load_all()
        return self._cache.get(job_type)

    def get_or_raise(self, job_type: str) -> PipelineDefinition:
        """
        Raises:
            ConfigError: no pipeline for the job type
        """
        pipeline = self.get(job_type)
        if pipeline is None:
            raise ConfigError(f"Pipeline not found: {job_type}", operation="pipeline.get")
        return pipeline

    def list_all(self) -> List[PipelineDefinition]:
        if not self._loaded:
            self.load_all()
        return list(self._cache.values())

    def register(self, pipeline: PipelineDefinition) -> PipelineDefinition:
        """
        Add a pipeline programmatically (tests, code-defined pipelines).

        Raises:
            ConfigError: structure or cycle errors
        """
        errors = validate_pipeline(pipeline)
        if errors:
            raise ConfigError(f"Invalid pipeline {pipeline.job_type}: {errors}", operation="pipeline.register")
        self._cache[pipeline.job_type] = pipeline
        logger.info(f"Registered pipeline: {pipeline.job_type}")
        return pipeline

    def install(self) -> List[str]:
        """
        Register every known pipeline with the handler registry.

        Must run after stage handler modules are imported; a pipeline whose
        inline stages have no handler is refused.

        Returns:
            Installed job types
        """
        installed = []
        for pipeline in self.list_all():
            missing = validate_stage_handlers(pipeline)
            if missing:
                raise ConfigError(
                    f"pipeline {pipeline.job_type} references unknown stage handlers: {missing}",
                    operation="pipeline.install",
                )
            if get_pipeline(pipeline.job_type) is None:
                register_pipeline(pipeline)
            installed.append(pipeline.job_type)
        return installed

    def _load_yaml(self, path: Path) -> PipelineDefinition:
        with open(path) as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ConfigError(f"Invalid pipeline in {path}: expected a mapping")

        try:
            pipeline = PipelineDefinition(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid pipeline in {path}: {e}") from e

        errors = validate_pipeline(pipeline)
        if errors:
            raise ConfigError(f"Invalid pipeline in {path}: {errors}")

        return pipeline

    def reload(self) -> int:
        """Reload all pipelines from disk (already registered job types stay registered)."""
        self._cache.clear()
        self._loaded = False
        return self.load_all()


__all__ = ["PipelineService"]

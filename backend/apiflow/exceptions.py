"""
Engine exceptions.

Configuration errors are raised before any run record is written; step-level
failures are never raised, they are returned as StepFailure outcomes.
"""


class ApiflowError(Exception):
    """Base class for all engine errors."""


class PipelineConfigurationError(ApiflowError):
    """The pipeline cannot be started as configured."""


class PipelineNotFoundError(PipelineConfigurationError):
    def __init__(self, pipeline_id: int):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline not found: {pipeline_id}")


class NoActiveStepsError(PipelineConfigurationError):
    def __init__(self, pipeline_id: int):
        self.pipeline_id = pipeline_id
        super().__init__(f"No active steps found for pipeline: {pipeline_id}")


class RunNotFoundError(ApiflowError):
    def __init__(self, run_id: int):
        self.run_id = run_id
        super().__init__(f"Pipeline execution not found: {run_id}")


class RunStateError(ApiflowError):
    """The requested transition is not allowed from the run's current status."""

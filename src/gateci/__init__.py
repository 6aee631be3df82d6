from .dsl import job, sh, use, scan, deploy, checkout, gate, retry, matrix, wf, JobBuilder, build
from .dag import JobGraph
from .engine import PipelineEngine
from .gates import GateEvaluator, GatePolicy, GateResult, MetricViolation
from .model import Job, Step, RetryPolicy

__version__ = "0.1.0"

__all__ = [
    "job", "sh", "use", "scan", "deploy", "checkout", "gate", "retry", "matrix", "wf",
    "JobBuilder", "build", "JobGraph", "PipelineEngine", "GateEvaluator", "GatePolicy",
    "GateResult", "MetricViolation", "Job", "Step", "RetryPolicy",
]

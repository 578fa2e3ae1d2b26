"""Database models."""
from splitlab.models.experiment import Experiment, ExperimentStatus
from splitlab.models.assignment import ExperimentAssignment
from splitlab.models.event import ExperimentEvent
from splitlab.models.metric_bucket import ExperimentMetricBucket
from splitlab.models.global_setting import GlobalSetting
from splitlab.models.webhook import Webhook

__all__ = [
    "Experiment",
    "ExperimentStatus",
    "ExperimentAssignment",
    "ExperimentEvent",
    "ExperimentMetricBucket",
    "GlobalSetting",
    "Webhook",
]

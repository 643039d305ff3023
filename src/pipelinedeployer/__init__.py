"""
pipelinedeployer - Build, push and register Prefect pipeline flows on AWS or GCP
"""

__version__ = "0.1.0"

from .core import PipelineDeployer
from .errors import DeployError

__all__ = ["PipelineDeployer", "DeployError"]

"""Domain errors for pipelinedeployer."""


class DeployError(RuntimeError):
    """Raised when the deployment cannot continue safely."""

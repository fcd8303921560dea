"""
Error types raised by the site deployer.

Every failure the CLI reports derives from DeployerError so the front end
can print one line and exit non-zero.
"""

from typing import Dict, Optional, Sequence


class DeployerError(Exception):
    """Base class for all reported failures"""


class ValidationError(DeployerError):
    """Bad or missing arguments"""


class NotFoundError(DeployerError):
    """Operating on a site or repository that does not exist"""


class AlreadyExistsError(DeployerError):
    """Duplicate site or repository registration"""


class AuthenticationError(DeployerError):
    """Webhook signature mismatch"""


class ArtifactNotFoundError(DeployerError):
    """The build did not produce the configured artifact"""


class ExternalToolError(DeployerError):
    """An external command exited non-zero"""

    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = f"Command failed ({returncode}): {' '.join(self.command)}"
        if output:
            message += f"\nOutput: {output.strip()}"
        super().__init__(message)


class TimeoutExhaustedError(DeployerError):
    """A bounded poll ran out of attempts"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class DeploymentTimeoutError(TimeoutExhaustedError):
    """The overall deployment ceiling was exceeded"""


class PipelineError(DeployerError):
    """A deployment pipeline step failed"""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")


class BatchError(DeployerError):
    """One or more sites failed during a batch operation"""

    def __init__(self, failures: Dict[str, Exception], action: Optional[str] = None):
        self.failures = dict(failures)
        label = f"{action} " if action else ""
        names = ", ".join(sorted(self.failures))
        super().__init__(f"{label}failed for {len(self.failures)} site(s): {names}")


class TemplateRenderError(DeployerError):
    """A configuration template is missing or does not render"""

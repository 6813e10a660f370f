"""InfraCore Deploy: transactional deployment of the InfraCore services."""

__version__ = "1.0.0"

from infracore.api.facade import InfraCore
from infracore.deployment.config_manager import ConfigResolver
from infracore.deployment.driver import OrchestrationDriver
from infracore.deployment.errors import DeploymentError
from infracore.deployment.models import DeploymentConfig
from infracore.deployment.report import DeploymentReport

__all__ = [
    "__version__",
    # Facade
    "InfraCore",
    # Deployment
    "ConfigResolver",
    "DeploymentConfig",
    "DeploymentError",
    "DeploymentReport",
    "OrchestrationDriver",
]

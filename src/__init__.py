"""hashi-up - Install and configure HashiCorp Consul locally or over SSH"""

# Configure logging at module level
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Public API imports
from .errors import HashiUpError
from .installer import ConsulInstaller, InstallResult
from .models import InstallOptions, Target
from .operators import CommandOperator, LocalOperator, RemoteOperator, open_operator

# Version info
__version__ = "0.1.0"

# Public exports
__all__ = [
    "ConsulInstaller",
    "InstallResult",
    "InstallOptions",
    "Target",
    "CommandOperator",
    "LocalOperator",
    "RemoteOperator",
    "open_operator",
    "HashiUpError",
]

"""Utils module."""
from .logging_config import (
    setup_logging,
    get_logger,
    EstimationLogger,
    configure_warnings
)
from .budget import Deadline

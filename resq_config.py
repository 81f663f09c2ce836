"""
RapidResQ Configuration
=======================
Environment-driven settings and structured logging for the emergency
command processor.

Environment
-----------
  RESQ_QUEUE_CAPACITY        bounded emergency queue size        (100)
  RESQ_LOCK_TIMEOUT          seconds to wait for the parser lock (5.0)
  RESQ_SIMULATED_LATENCY_MS  upper bound of the simulated parse  (5)
  RESQ_MAX_COMMAND_LENGTH    practical command length bound      (500)
  RESQ_LOG_LEVEL             minimum structlog level             (info)
"""

import logging
import os

import structlog
from pydantic import BaseModel, Field

# ============================================
# Configuration
# ============================================
GRAMMAR_NAME = "EmergencyCommand"
GRAMMAR_VERSION = "1.0"

QUEUE_CAPACITY = int(os.environ.get("RESQ_QUEUE_CAPACITY", "100"))
LOCK_TIMEOUT = float(os.environ.get("RESQ_LOCK_TIMEOUT", "5.0"))
SIMULATED_LATENCY_MS = float(os.environ.get("RESQ_SIMULATED_LATENCY_MS", "5"))
MAX_COMMAND_LENGTH = int(os.environ.get("RESQ_MAX_COMMAND_LENGTH", "500"))
LOG_LEVEL = os.environ.get("RESQ_LOG_LEVEL", "info").upper()


class CoordinatorSettings(BaseModel):
    queue_capacity: int = Field(QUEUE_CAPACITY, ge=1, le=100_000)
    lock_timeout: float = Field(LOCK_TIMEOUT, gt=0.0, description="Seconds before a parser lock wait fails.")
    simulated_latency_ms: float = Field(SIMULATED_LATENCY_MS, ge=0.0, le=1000.0)
    max_command_length: int = Field(MAX_COMMAND_LENGTH, ge=1)


def load_settings(**overrides) -> CoordinatorSettings:
    """Settings from the environment, with keyword overrides applied on top."""
    return CoordinatorSettings(**overrides)


# ============================================
# Logging
# ============================================
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, LOG_LEVEL, logging.INFO)
    ),
)

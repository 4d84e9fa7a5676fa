"""Configuration module — settings and action category policies."""

from pacekeeper.config.action_policies import ActionPolicy, OperatingHours, load_action_policies
from pacekeeper.config.settings import PacekeeperSettings

__all__ = [
    "ActionPolicy",
    "OperatingHours",
    "PacekeeperSettings",
    "load_action_policies",
]

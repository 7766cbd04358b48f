from .settings import (
    PROFILE_NAMES,
    PipelineProfile,
    Settings,
    get_settings,
)

__all__ = [
    "PROFILE_NAMES",
    "PipelineProfile",
    "Settings",
    "get_settings",
]

from .model import Release, Repository, HelmDefaults, release_to_id
from .dag import plan_releases
from .runner import scatter_gather, iterate_on_releases
from .state import load_state

__all__ = [
    "Release",
    "Repository",
    "HelmDefaults",
    "release_to_id",
    "plan_releases",
    "scatter_gather",
    "iterate_on_releases",
    "load_state",
]

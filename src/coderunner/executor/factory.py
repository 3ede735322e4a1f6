from ..settings import Settings
from .base import Executor
from .docker import DockerExecutor
from .host import HostExecutor


def make_executor(settings: Settings) -> Executor:
    if settings.backend == "docker":
        return DockerExecutor(settings)
    return HostExecutor(settings)

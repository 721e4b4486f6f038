"""Execution handles (micro-VM stand-ins) that sessions run commands in."""

from .base import OutputChunk, ProcessResult, VMError, VMFactory, VMHandle, VMProcess
from .docker import DockerVM, DockerVMFactory, DockerVMProcess, docker_available
from .local import LocalVM, LocalVMFactory
from .process import SubprocessVMProcess


def create_vm_factory(backend: str, *, docker_image: str = "ubuntu:24.04") -> VMFactory:
    """Return the factory for a configured backend name."""

    if backend == "docker":
        return DockerVMFactory(docker_image)
    if backend == "local":
        return LocalVMFactory()
    raise ValueError(f"Unknown execution backend '{backend}'")


__all__ = [
    "DockerVM",
    "DockerVMFactory",
    "DockerVMProcess",
    "LocalVM",
    "LocalVMFactory",
    "OutputChunk",
    "ProcessResult",
    "SubprocessVMProcess",
    "VMError",
    "VMFactory",
    "VMHandle",
    "VMProcess",
    "create_vm_factory",
    "docker_available",
]

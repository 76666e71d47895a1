"""Built-in task handlers.

Each handler is registered under its task type and a few short aliases.
Aliases matching Ansible module names accept the same parameters as the
module for the subset provisor implements.

Usage:
    from provisor.handlers import BUILTIN_HANDLERS

    for handler_cls, aliases in BUILTIN_HANDLERS:
        registry.register(handler_cls.name, handler_cls(), aliases=aliases)
"""

from .command import ShellCommandHandler
from .files import DirectoryEnsureHandler, FileAttributesEnsureHandler, FileContentEnsureHandler
from .git import GitCheckoutHandler
from .package import PackageEnsureHandler
from .process import ProcessSuperviseHandler
from .service import ServiceEnsureHandler
from .template import TemplatedFileRenderHandler
from .user import UserEnsureHandler
from .variables import CredentialEnsureHandler, SetFactHandler

BUILTIN_HANDLERS = [
    (UserEnsureHandler, ("user",)),
    (DirectoryEnsureHandler, ("directory",)),
    (FileContentEnsureHandler, ("file-content",)),
    (FileAttributesEnsureHandler, ("file-attributes",)),
    (PackageEnsureHandler, ("package", "apt")),
    (GitCheckoutHandler, ("git",)),
    (TemplatedFileRenderHandler, ("template",)),
    (ServiceEnsureHandler, ("service",)),
    (ShellCommandHandler, ("shell", "command")),
    (SetFactHandler, ("set_fact",)),
    (CredentialEnsureHandler, ("credentials",)),
    (ProcessSuperviseHandler, ("process",)),
]

__all__ = [
    "BUILTIN_HANDLERS",
    "CredentialEnsureHandler",
    "DirectoryEnsureHandler",
    "FileAttributesEnsureHandler",
    "FileContentEnsureHandler",
    "GitCheckoutHandler",
    "PackageEnsureHandler",
    "ProcessSuperviseHandler",
    "ServiceEnsureHandler",
    "SetFactHandler",
    "ShellCommandHandler",
    "TemplatedFileRenderHandler",
    "UserEnsureHandler",
]

"""Built-in providers."""

from .local import LocalDirectory as LocalDirectory
from .local import LocalFile as LocalFile

"""CLI command implementations for depot_mirror.

- titles: Manage the tracked catalog
- sync: Reconcile titles against the upstream catalog
- serve: Run scheduled batch reconciliation
- dlc: DLC completeness for a title
- files: Browse a title branch
"""

from depot_mirror.commands.dlc import dlc
from depot_mirror.commands.files import files_group
from depot_mirror.commands.serve import serve
from depot_mirror.commands.sync import sync_group
from depot_mirror.commands.titles import titles_group

__all__ = ["dlc", "files_group", "serve", "sync_group", "titles_group"]

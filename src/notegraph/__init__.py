"""notegraph -- a personal notebook that links related notes and explains why.

Quick start::

    from notegraph import Notebook

    async def main():
        nb = Notebook()
        await nb.initialize()

        owner = await nb.create_owner("ada")
        created = await nb.create_entry(
            owner["id"], "React hooks", "useEffect cleanup runs ...", tags=["react"]
        )
        print(created["auto_linking"])

        await nb.shutdown()

For lower-level access, import from submodules::

    from notegraph.entries import Entry, EntryManager, LinkEdge
    from notegraph.search import CandidateSearch
    from notegraph.pipeline import LinkingPipeline, AutoLinkResult
    from notegraph.sweep import OrphanSweep, SweepSummary
"""

from __future__ import annotations

__version__ = "0.1.0"

from notegraph.entries import ENTRY_KINDS, Entry, LinkEdge
from notegraph.notebook import Notebook

__all__ = [
    "__version__",
    "Notebook",
    "Entry",
    "LinkEdge",
    "ENTRY_KINDS",
]

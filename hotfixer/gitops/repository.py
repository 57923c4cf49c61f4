from __future__ import annotations

from typing import Callable, Dict, List, Optional, Protocol

from hotfixer.models import OpenChange, PullRequestResult

ChangePredicate = Callable[[OpenChange], bool]


class CodeRepository(Protocol):
    """
    Where source is read from and where fixes are published.
    Implementations raise on transport errors; callers decide how to degrade.
    """

    async def read_file(self, path: str, *, ref: Optional[str] = None) -> Optional[str]: ...

    async def create_branch(self, name: str) -> None:
        """Create `name` from the head of the default branch."""
        ...

    async def write(self, *, branch: str, path: str, content: str, message: str) -> None: ...

    async def open_change(self, *, title: str, body: str, branch: str) -> PullRequestResult: ...

    async def search_open_changes(self, predicate: ChangePredicate) -> List[OpenChange]: ...

    async def search_code(self, query: str, *, max_results: int = 10) -> List[Dict[str, str]]: ...

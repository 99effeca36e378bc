# relaybridge/handlers/base.py
import re
from typing import Any, Dict, Optional

from relaybridge.schemas import Outcome


class ActionHandler:
    """
    A pluggable integration the dispatcher hands a request to instead of making
    a plain HTTP call. Subclasses set `name` and `url_pattern` and implement
    execute(); any retry policy lives inside the handler.
    """

    name: str = "handler"
    url_pattern: re.Pattern = re.compile(r"^$")

    def match(self, url: str) -> Optional[re.Match]:
        return self.url_pattern.match(url or "")

    async def execute(self, request_id: str, parameters: Dict[str, Any]) -> Outcome:
        raise NotImplementedError

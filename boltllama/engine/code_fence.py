"""Fenced code block extraction.

Models asked for code usually wrap it in a markdown fence:

```python
print("hi")
```

We pull the first such block out of the free-form text. This is a pure
post-processing step; it never fails and never touches the model.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_FENCE_RE = re.compile(r"```([\w+#.-]*)[^\S\n]*\n(.*?)\n```", flags=re.DOTALL)


@dataclass(frozen=True)
class CodeBlock:
    content: str
    language: str | None = None


def extract_code_block(text: str) -> CodeBlock | None:
    """Return the first fenced block in `text`, or None if there is none."""
    match = _FENCE_RE.search(text or "")
    if match is None:
        return None
    language = match.group(1).strip().lower() or None
    return CodeBlock(content=match.group(2), language=language)


def primary_payload(text: str) -> tuple[str, str | None]:
    """(payload, language): the first fenced block's body, else the raw text verbatim."""
    block = extract_code_block(text)
    if block is None:
        return text, None
    return block.content, block.language

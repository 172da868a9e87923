# Model runtime adapters
#
# Each adapter implements a common interface for:
#   - Loading model + tokenizer
#   - Managing KV-cache sessions and streaming token ids
#   - Reporting metadata
#
# The engine uses adapters to stay runtime-agnostic.

from .base import BaseAdapter
from .transformers import TransformersAdapter

__all__ = ["BaseAdapter", "TransformersAdapter"]

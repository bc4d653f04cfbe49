"""User memory bank and extraction."""

from polychat.memory.bank import MemoryBank, MemoryItem, MemoryType, cosine_similarity
from polychat.memory.extractor import extract_memories, parse_extraction

__all__ = [
    "MemoryBank",
    "MemoryItem",
    "MemoryType",
    "cosine_similarity",
    "extract_memories",
    "parse_extraction",
]

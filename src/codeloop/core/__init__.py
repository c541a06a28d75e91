"""Core subpackage - history, streaming, retry, compaction and LLM plumbing."""

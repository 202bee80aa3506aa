"""
clion: a command-line LLM assistant for source code.

The package is organized around three cooperating pieces:

* Context assembly (`context_builder`): expands `@file <path>` directives
  in a prompt into file contents, excerpts of oversized files, or
  generated summaries of files with low relevance to the prompt, and
  optionally prepends context recalled from memory nodes.
* Session persistence (`session`): one JSON document per conversation,
  with a parent/child hierarchy, checkpoints (`checkpoints`) and memory
  node links (`memory`).
* Request governance (`llm_client`, `providers`): token and cost
  estimation, an over-limit confirmation step, and a single request
  over the OpenAI-compatible or Gemini wire format.

See `cli.py` for the entry point.
"""

__all__ = [
    "cli",
    "config",
    "context_builder",
    "llm_client",
    "session",
]

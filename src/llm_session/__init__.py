# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""llm-session: Streaming conversational session core for local LLM engines.

Sits between a one-token-at-a-time generation engine and a host
application: reassembles engine bytes into text units, keeps a role-aware
conversation history, and drives a cancellable, metered decode loop.

Architecture: Hexagonal (Ports & Adapters)
- Domain core: Pure logic (stream decoder, conversation history)
- Ports: Protocol-based interfaces (engine, host callbacks)
- Adapters: Infrastructure bindings (MLX, pydantic-settings, structlog)
"""

__version__ = "1.0.0"

__all__ = ["__version__"]

"""Domain layer for the session core.

This package contains pure logic with zero external dependencies.
All domain code uses only the Python stdlib and internal
llm_session.domain imports.

Modules:
    errors: Session exception hierarchy
    value_objects: Immutable value objects (ConversationTurn, GenerationResult, EngineStats)
    stream_decoder: Incremental UTF-8 reassembly (Utf8StreamDecoder)
    conversation: Conversation history and templating policies
"""

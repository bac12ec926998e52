"""Chat relay gateway bridging HTTP chat requests onto a local Ollama backend.

Non-stream requests are answered with one JSON body; stream requests are
relayed chunk by chunk as server-sent events.
"""

__all__ = []

"""
agentloop - LLM tool-calling orchestration engine.

Drives multi-turn conversations between a user and a language model that
may call registered tools, folding tool results back into the conversation
until the model produces an answer, and streams progress to the client.
"""

__version__ = "0.1.0"

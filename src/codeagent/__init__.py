"""codeagent: an autonomous coding-agent runtime.

Drives a reasoning/acting loop between a language model and local tools,
keeps conversation state within the model's context budget, and talks to
language servers for diagnostics and code navigation.
"""

__version__ = "0.1.0"

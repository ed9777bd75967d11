"""Language server integration: framing, JSON-RPC transport, clients and supervision."""

from codeagent.lsp.client import ClientState, LspClient
from codeagent.lsp.diagnostics import (
    Diagnostic,
    DiagnosticsReport,
    DiagnosticsStatus,
    Severity,
    format_for_agent,
)
from codeagent.lsp.profiles import ProfileRegistry, ServerProfile, find_root
from codeagent.lsp.supervisor import LspServerInstance, LspSupervisor
from codeagent.lsp.transport import RpcTransport

__all__ = [
    "ClientState",
    "Diagnostic",
    "DiagnosticsReport",
    "DiagnosticsStatus",
    "LspClient",
    "LspServerInstance",
    "LspSupervisor",
    "ProfileRegistry",
    "RpcTransport",
    "ServerProfile",
    "Severity",
    "find_root",
    "format_for_agent",
]

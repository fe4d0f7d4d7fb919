"""
Static tool policy table.

Every connector-backed tool maps to the connector that owns it and the
minimum permission level it needs. Levels are cumulative and compared
numerically:

    0  read-only           get_*, search_*, list_*
    1  create drafts       create_*_draft, create_contact, append rows
    2  approve / update    approve_*, update_*, record_payment
    3  delete / void       void_*, delete_*, clear ranges

Tools that are not connector-backed (memory and discovery tools) are listed
in UNGATED_TOOLS. A routable tool that appears in neither table is a
configuration error, caught by validate_tool_registry() at start-up.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Iterable, List, Optional


class ToolPolicyError(RuntimeError):
    """The tool registry and the policy table disagree."""


class Connector(str, Enum):
    XERO = "xero"
    GMAIL = "gmail"
    GOOGLE_SHEETS = "google_sheets"

    @classmethod
    def parse(cls, value: str) -> "Connector":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            valid = ", ".join(connector.value for connector in cls)
            raise ValueError(f"Invalid connector. Must be one of: {valid}") from None


class PermissionLevel(IntEnum):
    READ_ONLY = 0
    CREATE = 1
    UPDATE = 2
    DESTRUCTIVE = 3

    @classmethod
    def parse(cls, value) -> "PermissionLevel":
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError("Invalid permission level. Must be 0, 1, 2, or 3.")
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ValueError("Invalid permission level. Must be 0, 1, 2, or 3.") from None


PERMISSION_LEVEL_NAMES: Dict[PermissionLevel, str] = {
    PermissionLevel.READ_ONLY: "Read-Only",
    PermissionLevel.CREATE: "Create Drafts",
    PermissionLevel.UPDATE: "Approve & Update",
    PermissionLevel.DESTRUCTIVE: "Delete & Void",
}

CONNECTOR_PERMISSION_NAMES: Dict[Connector, Dict[PermissionLevel, str]] = {
    Connector.XERO: dict(PERMISSION_LEVEL_NAMES),
    Connector.GMAIL: {
        PermissionLevel.READ_ONLY: "Read-Only",
        PermissionLevel.CREATE: "Draft Emails",
        PermissionLevel.UPDATE: "Send & Label",
        PermissionLevel.DESTRUCTIVE: "Delete Emails",
    },
    Connector.GOOGLE_SHEETS: {
        PermissionLevel.READ_ONLY: "Read-Only",
        PermissionLevel.CREATE: "Create & Append",
        PermissionLevel.UPDATE: "Edit Cells",
        PermissionLevel.DESTRUCTIVE: "Clear & Delete",
    },
}

CONNECTOR_LABELS: Dict[Connector, str] = {
    Connector.XERO: "Xero",
    Connector.GMAIL: "Gmail",
    Connector.GOOGLE_SHEETS: "Google Sheets",
}


def level_name(level: int, connector: Optional[Connector] = None) -> str:
    level = PermissionLevel(level)
    if connector is not None:
        return CONNECTOR_PERMISSION_NAMES[connector][level]
    return PERMISSION_LEVEL_NAMES[level]


@dataclass(frozen=True)
class ToolPolicy:
    connector: Connector
    required_level: PermissionLevel
    category: str


def _policies(connector: Connector, category: str, level: PermissionLevel, *names: str):
    return {name: ToolPolicy(connector, level, category) for name in names}


_READ = PermissionLevel.READ_ONLY
_CREATE = PermissionLevel.CREATE
_UPDATE = PermissionLevel.UPDATE
_DESTROY = PermissionLevel.DESTRUCTIVE

TOOL_POLICIES: Dict[str, ToolPolicy] = {
    # Xero
    **_policies(Connector.XERO, "invoices", _READ, "get_invoices", "get_aged_receivables", "get_aged_payables"),
    **_policies(Connector.XERO, "reports", _READ, "get_profit_and_loss", "get_balance_sheet"),
    **_policies(Connector.XERO, "banking", _READ, "get_bank_accounts", "get_bank_transactions"),
    **_policies(Connector.XERO, "contacts", _READ, "get_contacts", "search_contacts"),
    **_policies(Connector.XERO, "organisation", _READ, "get_organisation"),
    **_policies(Connector.XERO, "invoices", _CREATE, "create_invoice_draft", "create_credit_note_draft"),
    **_policies(Connector.XERO, "contacts", _CREATE, "create_contact"),
    **_policies(Connector.XERO, "invoices", _UPDATE, "approve_invoice", "update_invoice"),
    **_policies(Connector.XERO, "contacts", _UPDATE, "update_contact"),
    **_policies(Connector.XERO, "payments", _UPDATE, "record_payment"),
    **_policies(Connector.XERO, "invoices", _DESTROY, "void_invoice", "delete_draft_invoice"),
    **_policies(Connector.XERO, "contacts", _DESTROY, "delete_contact"),
    # Gmail
    **_policies(
        Connector.GMAIL, "email", _READ,
        "search_gmail", "get_email_content", "download_attachment", "list_email_attachments",
    ),
    # Google Sheets
    **_policies(
        Connector.GOOGLE_SHEETS, "spreadsheets", _READ,
        "list_spreadsheets", "get_spreadsheet_metadata", "read_sheet_range",
    ),
    **_policies(Connector.GOOGLE_SHEETS, "spreadsheets", _CREATE, "create_spreadsheet", "append_sheet_rows"),
    **_policies(Connector.GOOGLE_SHEETS, "spreadsheets", _UPDATE, "update_sheet_range"),
    **_policies(Connector.GOOGLE_SHEETS, "spreadsheets", _DESTROY, "clear_sheet_range", "delete_sheet"),
}

MEMORY_TOOLS: FrozenSet[str] = frozenset(
    {
        "create_entities",
        "create_relations",
        "add_observations",
        "delete_entities",
        "delete_observations",
        "delete_relations",
        "read_graph",
        "search_nodes",
        "open_nodes",
        "get_memory_summary",
        "save_memory_summary",
    }
)

META_TOOLS: FrozenSet[str] = frozenset({"get_tools_in_category", "execute_tool"})

UNGATED_TOOLS: FrozenSet[str] = MEMORY_TOOLS | META_TOOLS


def get_tool_policy(tool_name: str) -> Optional[ToolPolicy]:
    return TOOL_POLICIES.get(tool_name)


def is_write_operation(tool_name: str) -> bool:
    policy = TOOL_POLICIES.get(tool_name)
    return policy is not None and policy.required_level > PermissionLevel.READ_ONLY


def requires_confirmation(tool_name: str) -> bool:
    policy = TOOL_POLICIES.get(tool_name)
    return policy is not None and policy.required_level >= PermissionLevel.UPDATE


def is_destructive_operation(tool_name: str) -> bool:
    policy = TOOL_POLICIES.get(tool_name)
    return policy is not None and policy.required_level >= PermissionLevel.DESTRUCTIVE


def tool_categories() -> List[str]:
    return sorted({policy.category for policy in TOOL_POLICIES.values()} | {"memory"})


def tools_in_category(category: str) -> List[str]:
    """Tool names in ``category``; ``memory`` lists the ungated memory tools."""
    wanted = (category or "").strip().lower()
    if wanted == "memory":
        return sorted(MEMORY_TOOLS)
    return [name for name, policy in TOOL_POLICIES.items() if policy.category == wanted]


def validate_tool_registry(tool_names: Iterable[str]) -> None:
    """Fail fast when a routable tool has no policy and is not marked ungated."""
    for name, policy in TOOL_POLICIES.items():
        if not isinstance(policy.connector, Connector) or not isinstance(
            policy.required_level, PermissionLevel
        ):
            raise ToolPolicyError(f"Tool '{name}' has an invalid policy entry: {policy!r}")
        if name in UNGATED_TOOLS:
            raise ToolPolicyError(f"Tool '{name}' is both gated and ungated")

    unmapped = sorted(
        name for name in set(tool_names)
        if name not in TOOL_POLICIES and name not in UNGATED_TOOLS
    )
    if unmapped:
        raise ToolPolicyError(
            "Routable tools missing from the policy table: " + ", ".join(unmapped)
        )

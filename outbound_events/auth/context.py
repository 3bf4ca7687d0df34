from dataclasses import dataclass


@dataclass
class SuperAdminContext:
    """Identity of the operator calling dead-letter and metrics routes."""
    super_admin_id: str
    email: str

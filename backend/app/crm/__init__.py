"""CRM mirror of provisioned workspaces."""

from .models import (
    CompanyFields,
    CrmLinkage,
    CrmObjectType,
    CrmSyncStep,
    DealFields,
    DealMeta,
    ProductFields,
    RecordReference,
    WorkspaceFields,
    WorkspaceMatch,
)
from .service import CrmClient, CrmSynchronizer

__all__ = [
    "CompanyFields",
    "CrmClient",
    "CrmLinkage",
    "CrmObjectType",
    "CrmSyncStep",
    "CrmSynchronizer",
    "DealFields",
    "DealMeta",
    "ProductFields",
    "RecordReference",
    "WorkspaceFields",
    "WorkspaceMatch",
]

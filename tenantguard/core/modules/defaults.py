from __future__ import annotations

from typing import Dict, List, Tuple

from tenantguard.core.modules.models import ModuleClassification, ModuleDescriptor


OPERATOR_MODULES: Tuple[str, ...] = (
    "super-admin",
    "system-admin",
    "admin-panel",
)

TENANT_MODULES: Tuple[str, ...] = (
    "customers",
    "sales",
    "contracts",
    "service-contracts",
    "products",
    "product-sales",
    "tickets",
    "complaints",
    "job-works",
    "notifications",
    "reports",
    "settings",
    "dashboard",
    "masters",
    "user-management",
)

# One permission key per tenant module. Operator modules are gated by scope alone.
MODULE_PERMISSION_KEYS: Dict[str, str] = {
    "customers": "crm:customer:record:read",
    "sales": "crm:sales:deal:read",
    "contracts": "crm:contract:record:read",
    "service-contracts": "crm:service-contract:record:read",
    "products": "crm:product:record:read",
    "product-sales": "crm:product-sale:record:read",
    "tickets": "crm:support:ticket:read",
    "complaints": "crm:support:complaint:read",
    "job-works": "crm:job-work:record:read",
    "notifications": "crm:notification:channel:read",
    "reports": "crm:analytics:insight:view",
    "settings": "crm:settings:tenant:read",
    "dashboard": "crm:dashboard:panel:view",
    "masters": "crm:masters:record:read",
    "user-management": "crm:user:record:read",
}

MODULE_DEPENDENCIES: Dict[str, Tuple[str, ...]] = {
    "product-sales": ("products", "customers"),
    "service-contracts": ("contracts", "customers"),
    "contracts": ("customers",),
    "job-works": ("customers", "products"),
    "reports": ("dashboard",),
}


def default_module_catalog() -> List[ModuleDescriptor]:
    """
    Descriptors for the stock product modules, operator modules first.
    """
    out: List[ModuleDescriptor] = []
    for name in OPERATOR_MODULES:
        out.append(
            ModuleDescriptor(
                name=name,
                classification=ModuleClassification.OperatorOnly,
                dependencies=MODULE_DEPENDENCIES.get(name, ()),
            )
        )
    for name in TENANT_MODULES:
        out.append(
            ModuleDescriptor(
                name=name,
                classification=ModuleClassification.TenantScoped,
                dependencies=MODULE_DEPENDENCIES.get(name, ()),
                permission_key=MODULE_PERMISSION_KEYS.get(name),
            )
        )
    return out

# =============================================
# File: app/services/catalog.py
# Purpose: Target store registry (id -> URL + dialect) and schema descriptions
# =============================================
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .dialects import Dialect, dialect_for_url, get_dialect


@dataclass(frozen=True)
class TableSpec:
    name: str
    description: str
    columns: List[str]
    # column -> short annotation, e.g. "FOREIGN KEY to sales_customers.id"
    notes: Dict[str, str] = field(default_factory=dict)
    samples: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SchemaSpec:
    tables: List[TableSpec]
    # (table, column, referenced_table, referenced_column)
    relationships: List[Tuple[str, str, str, str]] = field(default_factory=list)
    guidance: List[str] = field(default_factory=list)

    def describe(self, dialect: Dialect) -> str:
        q = dialect.quote
        lines: List[str] = [f"Tables (use {dialect.open_quote}{dialect.close_quote} for column names):"]
        for t in self.tables:
            lines.append("")
            lines.append(f"{t.name} ({t.description})")
            cols = []
            for c in t.columns:
                note = t.notes.get(c)
                cols.append(f"{q(c)} ({note})" if note else q(c))
            lines.append("  Columns: " + ", ".join(cols))
            if t.samples:
                lines.append("  Sample Data:")
                lines.extend(f"    - {s}" for s in t.samples)
        if self.relationships:
            lines.append("")
            lines.append("RELATIONSHIPS:")
            for table, col, ref_table, ref_col in self.relationships:
                lines.append(f"  - {table}.{q(col)} = {ref_table}.{q(ref_col)}")
        if self.guidance:
            lines.append("")
            lines.extend(f"CRITICAL: {g}" for g in self.guidance)
        return "\n".join(lines)


SCHEMAS: Dict[str, SchemaSpec] = {
    "sales": SchemaSpec(
        tables=[
            TableSpec(
                "sales_customers", "Customer information and contact details",
                ["id", "firstName", "lastName", "email", "phone", "address", "city", "state",
                 "country", "zipCode", "latitude", "longitude", "dateJoined", "totalSpent"],
                notes={"state": "US state codes like CA, TX, NY"},
                samples=[
                    'firstName: "John", "Sarah", "Michael", "Jennifer"',
                    'state: ONLY 2-letter codes stored - "CA", "TX", "NY", "FL"; convert full state names (California → CA)',
                    "totalSpent: ranges from 0 to 50000",
                ],
            ),
            TableSpec(
                "sales_products", "Product catalog with pricing and inventory",
                ["id", "name", "description", "price", "category", "sku", "stockLevel", "createdAt"],
                samples=['category: "Electronics", "Accessories", "Computers"', "price: ranges from 9.99 to 2999.99"],
            ),
            TableSpec(
                "sales_orders", "Customer orders and transactions",
                ["id", "orderNumber", "customerId", "orderDate", "status", "totalAmount", "shippingCost", "taxAmount"],
                notes={"customerId": "FOREIGN KEY to sales_customers.id"},
                samples=['status: "PENDING", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED" (UPPERCASE enum)'],
            ),
            TableSpec(
                "sales_order_items", "Individual items within orders",
                ["id", "orderId", "productId", "quantity", "unitPrice", "totalPrice"],
                notes={"orderId": "FOREIGN KEY to sales_orders.id", "productId": "FOREIGN KEY to sales_products.id"},
            ),
        ],
        relationships=[
            ("sales_orders", "customerId", "sales_customers", "id"),
            ("sales_order_items", "productId", "sales_products", "id"),
            ("sales_order_items", "orderId", "sales_orders", "id"),
        ],
        guidance=["When querying sales_order_items, ALWAYS include product names by joining with sales_products."],
    ),
    "hr": SchemaSpec(
        tables=[
            TableSpec(
                "hr_departments", "Organizational departments",
                ["id", "name", "description", "budget", "managerId"],
                samples=['name: "Engineering", "Sales", "Marketing", "HR", "Finance"'],
            ),
            TableSpec(
                "hr_employees", "Employee information and employment details",
                ["id", "employeeId", "firstName", "lastName", "email", "phone", "gender", "position",
                 "departmentId", "salary", "hireDate", "status"],
                notes={"departmentId": "FOREIGN KEY to hr_departments.id"},
                samples=[
                    "salary: ranges from 40000 to 250000",
                    'status: "ACTIVE", "INACTIVE", "TERMINATED", "ON_LEAVE" (UPPERCASE enum with underscores)',
                ],
            ),
            TableSpec(
                "hr_performance", "Employee performance reviews",
                ["id", "employeeId", "reviewDate", "rating", "goals", "feedback", "reviewer"],
                notes={"employeeId": "FOREIGN KEY to hr_employees.id"},
                samples=["rating: 1 to 5 (1=Poor, 5=Excellent)"],
            ),
        ],
        relationships=[
            ("hr_employees", "departmentId", "hr_departments", "id"),
            ("hr_performance", "employeeId", "hr_employees", "id"),
        ],
        guidance=["When showing departmentId, ALWAYS include the department name by joining with hr_departments."],
    ),
    "inventory": SchemaSpec(
        tables=[
            TableSpec(
                "inv_warehouses", "Warehouse locations and capacity",
                ["id", "name", "address", "city", "state", "country", "capacity", "managerId"],
            ),
            TableSpec(
                "inv_suppliers", "Product suppliers and vendors",
                ["id", "name", "contactName", "email", "phone", "address", "city", "state", "country"],
            ),
            TableSpec(
                "inv_products", "Product catalog for inventory",
                ["id", "name", "description", "sku", "category", "unitPrice", "supplierId", "minStock", "maxStock"],
                notes={"supplierId": "FOREIGN KEY to inv_suppliers.id"},
            ),
            TableSpec(
                "inv_inventory", "Current inventory levels by warehouse",
                ["id", "productId", "warehouseId", "quantity", "reservedQty", "lastUpdated"],
                notes={"productId": "FOREIGN KEY to inv_products.id", "warehouseId": "FOREIGN KEY to inv_warehouses.id"},
            ),
        ],
        relationships=[
            ("inv_inventory", "productId", "inv_products", "id"),
            ("inv_inventory", "warehouseId", "inv_warehouses", "id"),
            ("inv_products", "supplierId", "inv_suppliers", "id"),
        ],
        guidance=["NEVER return just productId or warehouseId without the corresponding names."],
    ),
    "finance": SchemaSpec(
        tables=[
            TableSpec("fin_accounts", "Ledger accounts",
                      ["id", "accountName", "accountType", "balance", "currency", "isActive", "createdAt"]),
            TableSpec("fin_transactions", "Account transactions",
                      ["id", "accountId", "amount", "type", "category", "description", "reference",
                       "transactionDate", "createdAt"],
                      notes={"accountId": "FOREIGN KEY to fin_accounts.id"}),
            TableSpec("fin_budgets", "Monthly budgets per category",
                      ["id", "category", "budgetYear", "budgetMonth", "allocated", "spent", "remaining", "createdAt"]),
        ],
        relationships=[("fin_transactions", "accountId", "fin_accounts", "id")],
    ),
    "customer_support": SchemaSpec(
        tables=[
            TableSpec(
                "cust_customers", "Support customers",
                ["id", "firstName", "lastName", "email", "phone", "company", "tier", "status", "joinDate", "lastContact"],
                samples=['tier: "BASIC", "STANDARD", "PREMIUM", "ENTERPRISE" (UPPERCASE enum)'],
            ),
            TableSpec(
                "cust_tickets", "Support tickets",
                ["id", "ticketNumber", "customerId", "subject", "description", "priority", "status",
                 "assignedTo", "category", "resolution", "createdAt", "updatedAt", "resolvedAt"],
                notes={"customerId": "FOREIGN KEY to cust_customers.id"},
                samples=[
                    'priority: "LOW", "MEDIUM", "HIGH", "CRITICAL" (UPPERCASE enum)',
                    'status: "OPEN", "IN_PROGRESS", "PENDING_CUSTOMER", "RESOLVED", "CLOSED" (UPPERCASE enum)',
                ],
            ),
            TableSpec(
                "cust_interactions", "Customer interactions per ticket",
                ["id", "customerId", "ticketId", "type", "channel", "subject", "notes", "agentName", "duration", "createdAt"],
                notes={"ticketId": "FOREIGN KEY to cust_tickets.id"},
            ),
        ],
        relationships=[
            ("cust_tickets", "customerId", "cust_customers", "id"),
            ("cust_interactions", "ticketId", "cust_tickets", "id"),
        ],
        guidance=["For login/access questions, include subject, description, resolution and status of matching tickets."],
    ),
}


@dataclass(frozen=True)
class StoreConfig:
    id: str
    url: str
    dialect: str
    schema: Optional[SchemaSpec] = None

    def describe_schema(self) -> str:
        if self.schema is None:
            return ""
        return self.schema.describe(get_dialect(self.dialect))


class StoreRegistry:
    """
    Resolves store ids to connection URLs:
      STORE_URL_<ID> (e.g. STORE_URL_SALES) or DEFAULT_STORE_URL.
    Only ids with a known schema (or an explicit URL) are valid.
    """

    def __init__(self, stores: Optional[Dict[str, StoreConfig]] = None):
        self._stores: Dict[str, StoreConfig] = dict(stores or {})

    @classmethod
    def from_env(cls) -> "StoreRegistry":
        default_url = os.getenv("DEFAULT_STORE_URL", "sqlite:///./askdb_demo.db")
        stores: Dict[str, StoreConfig] = {}
        ids = set(SCHEMAS)
        for key in os.environ:
            if key.startswith("STORE_URL_"):
                ids.add(key[len("STORE_URL_"):].lower())
        for store_id in sorted(ids):
            url = os.getenv(f"STORE_URL_{store_id.upper()}", default_url)
            stores[store_id] = StoreConfig(
                id=store_id, url=url, dialect=dialect_for_url(url), schema=SCHEMAS.get(store_id)
            )
        return cls(stores)

    def get(self, store_id: str) -> Optional[StoreConfig]:
        return self._stores.get((store_id or "").strip().lower())

    def ids(self) -> List[str]:
        return sorted(self._stores)

# =============================================
# File: app/services/dialects.py
# Purpose: Per-backend syntax rules used by the prompt builder
# =============================================
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List


@dataclass(frozen=True)
class Dialect:
    name: str
    expert: str
    open_quote: str
    close_quote: str
    limit_style: str  # "LIMIT" | "TOP" | "FETCH" | "MONGO"
    rules: List[str] = field(default_factory=list)
    examples: List[str] = field(default_factory=list)
    sql: bool = True

    def quote(self, identifier: str) -> str:
        return f"{self.open_quote}{identifier}{self.close_quote}"

    def limit_clause(self, n: int) -> str:
        if self.limit_style == "TOP":
            return f"TOP {n}"
        if self.limit_style == "FETCH":
            return f"FETCH FIRST {n} ROWS ONLY"
        if self.limit_style == "MONGO":
            return f".limit({n})"
        return f"LIMIT {n}"

    @property
    def label(self) -> str:
        return self.name.upper()


_COMMON_SQL_RULES = [
    "Sort results logically: \"top customers\" = ORDER BY total spent DESC, \"recent\" = ORDER BY creation date DESC",
    "For aggregations, include proper GROUP BY clauses",
    "Return meaningful columns based on the question",
    "Enum-like status/tier values are stored in UPPERCASE (e.g. 'PENDING', 'ACTIVE'); always compare against the UPPERCASE value",
    "For simple list/count queries, keep it simple. Don't use JOINs unless necessary",
]

DIALECTS: Dict[str, Dialect] = {
    "postgresql": Dialect(
        name="postgresql",
        expert="PostgreSQL expert",
        open_quote='"',
        close_quote='"',
        limit_style="LIMIT",
        rules=[
            'ALWAYS use double quotes around column names: SELECT "firstName", "lastName" FROM sales_customers',
            "Table names do NOT need quotes (they are snake_case)",
            "Use LIMIT to restrict results (default LIMIT 10 for lists, LIMIT 100 for data queries)",
            "Use ILIKE for case-insensitive text matching",
        ] + _COMMON_SQL_RULES,
        examples=[
            '"Show top 5 customers" → SELECT "firstName", "lastName", "email", "totalSpent" FROM sales_customers ORDER BY "totalSpent" DESC LIMIT 5',
            '"List all products" → SELECT "name", "price", "category", "stockLevel" FROM sales_products LIMIT 100',
        ],
    ),
    "sqlite": Dialect(
        name="sqlite",
        expert="SQLite expert",
        open_quote='"',
        close_quote='"',
        limit_style="LIMIT",
        rules=[
            'Use double quotes around column names: SELECT "firstName", "lastName" FROM sales_customers',
            "Use LIMIT to restrict results (default LIMIT 10 for lists, LIMIT 100 for data queries)",
            "Use LIKE for text matching (it is case-insensitive for ASCII); there is no ILIKE",
        ] + _COMMON_SQL_RULES,
        examples=[
            '"Show top 5 customers" → SELECT "firstName", "lastName", "email", "totalSpent" FROM sales_customers ORDER BY "totalSpent" DESC LIMIT 5',
        ],
    ),
    "mysql": Dialect(
        name="mysql",
        expert="MySQL expert",
        open_quote="`",
        close_quote="`",
        limit_style="LIMIT",
        rules=[
            "Use backticks around column names: SELECT `firstName`, `lastName` FROM sales_customers",
            "Use backticks around table names if they contain reserved words",
            "Use LIMIT to restrict results (default LIMIT 10 for lists, LIMIT 100 for data queries)",
        ] + _COMMON_SQL_RULES,
        examples=[
            '"Show top 5 customers" → SELECT `firstName`, `lastName`, `email`, `totalSpent` FROM sales_customers ORDER BY `totalSpent` DESC LIMIT 5',
            '"List all products" → SELECT `name`, `price`, `category`, `stockLevel` FROM sales_products LIMIT 100',
        ],
    ),
    "mariadb": Dialect(
        name="mariadb",
        expert="MariaDB expert",
        open_quote="`",
        close_quote="`",
        limit_style="LIMIT",
        rules=[
            "Use backticks around column names: SELECT `firstName`, `lastName` FROM sales_customers",
            "Use backticks around table names if they contain reserved words",
            "Use LIMIT to restrict results (default LIMIT 10 for lists, LIMIT 100 for data queries)",
        ] + _COMMON_SQL_RULES,
        examples=[
            '"Show top 5 customers" → SELECT `firstName`, `lastName`, `email`, `totalSpent` FROM sales_customers ORDER BY `totalSpent` DESC LIMIT 5',
        ],
    ),
    "sqlserver": Dialect(
        name="sqlserver",
        expert="SQL Server (T-SQL) expert",
        open_quote="[",
        close_quote="]",
        limit_style="TOP",
        rules=[
            "Use square brackets around identifiers: SELECT [firstName], [lastName] FROM sales_customers",
            "Use TOP clause instead of LIMIT: SELECT TOP 10 * FROM table",
        ] + _COMMON_SQL_RULES,
        examples=[
            '"Show top 5 customers" → SELECT TOP 5 [firstName], [lastName], [email], [totalSpent] FROM sales_customers ORDER BY [totalSpent] DESC',
            '"List all products" → SELECT TOP 100 [name], [price], [category], [stockLevel] FROM sales_products',
        ],
    ),
    "snowflake": Dialect(
        name="snowflake",
        expert="Snowflake expert",
        open_quote='"',
        close_quote='"',
        limit_style="LIMIT",
        rules=[
            'Use double quotes around identifiers: SELECT "firstName", "lastName" FROM sales_customers',
            "Use LIMIT clause for result restriction",
            "Snowflake is case-insensitive but preserves case with quotes",
        ] + _COMMON_SQL_RULES,
        examples=[
            '"Show top 5 customers" → SELECT "firstName", "lastName", "email", "totalSpent" FROM sales_customers ORDER BY "totalSpent" DESC LIMIT 5',
        ],
    ),
    "oracle": Dialect(
        name="oracle",
        expert="Oracle SQL expert",
        open_quote='"',
        close_quote='"',
        limit_style="FETCH",
        rules=[
            "Use double quotes around identifiers for case-sensitivity",
            "Use FETCH FIRST n ROWS ONLY for result restriction",
        ] + _COMMON_SQL_RULES,
        examples=[
            '"Show top 5 customers" → SELECT "firstName", "lastName", "email", "totalSpent" FROM sales_customers ORDER BY "totalSpent" DESC FETCH FIRST 5 ROWS ONLY',
        ],
    ),
    "mongodb": Dialect(
        name="mongodb",
        expert="MongoDB expert",
        open_quote="",
        close_quote="",
        limit_style="MONGO",
        sql=False,
        rules=[
            "Generate MongoDB query/aggregation syntax",
            "Use proper operators: $match, $sort, $limit, $group, $project",
            "Field names do NOT need quotes in the pipeline",
            "Return meaningful fields based on the question",
        ],
        examples=[
            '"Show top 5 customers" → db.sales_customers.find().sort({totalSpent: -1}).limit(5).project({firstName: 1, lastName: 1, email: 1, totalSpent: 1})',
        ],
    ),
}

# SQLAlchemy URL backend name -> dialect key
_URL_BACKENDS = {
    "postgresql": "postgresql",
    "postgres": "postgresql",
    "sqlite": "sqlite",
    "mysql": "mysql",
    "mariadb": "mariadb",
    "mssql": "sqlserver",
    "snowflake": "snowflake",
    "oracle": "oracle",
    "mongodb": "mongodb",
}


def get_dialect(name: str) -> Dialect:
    return DIALECTS.get((name or "").lower(), DIALECTS["postgresql"])


def dialect_for_url(url: str) -> str:
    """'postgresql+psycopg://...' -> 'postgresql'."""
    scheme = (url or "").split("://", 1)[0].lower()
    backend = scheme.split("+", 1)[0]
    return _URL_BACKENDS.get(backend, "postgresql")

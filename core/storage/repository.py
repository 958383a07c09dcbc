"""CRUD operations for domain entities and operation reports.

All functions open a short-lived connection to the database at db_path.
Domain entities are upserted by their natural key (sap_id); operation
report items are append-only apart from their single completion update.
"""

import sqlite3
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from core.config import DEFAULT_DB_PATH
from core.models.entities import (
    ChatGroup,
    ChatThread,
    Contract,
    ContractStatus,
    DeliveryPlace,
    ItemGroup,
    ItemGroupCategory,
    Product,
)
from core.models.operations import (
    OperationReport,
    OperationReportItem,
    OperationType,
)
from core.storage.db import DbPath, connect


def _now() -> str:
    return datetime.utcnow().isoformat()


def _date_to_str(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _str_to_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


# =============================================================================
# Delivery places
# =============================================================================

def _row_to_delivery_place(row: sqlite3.Row) -> DeliveryPlace:
    return DeliveryPlace(id=row["id"], sap_id=row["sap_id"], name=row["name"])


def get_delivery_place(delivery_place_id: int, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[DeliveryPlace]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM delivery_place WHERE id = ?", (delivery_place_id,)).fetchone()
        return _row_to_delivery_place(row) if row else None
    finally:
        conn.close()


def find_delivery_place_by_sap_id(sap_id: str, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[DeliveryPlace]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM delivery_place WHERE sap_id = ?", (sap_id,)).fetchone()
        return _row_to_delivery_place(row) if row else None
    finally:
        conn.close()


def list_delivery_places(db_path: DbPath = DEFAULT_DB_PATH) -> List[DeliveryPlace]:
    conn = connect(db_path)
    try:
        rows = conn.execute("SELECT * FROM delivery_place ORDER BY id").fetchall()
        return [_row_to_delivery_place(row) for row in rows]
    finally:
        conn.close()


def upsert_delivery_place(
    delivery_place: DeliveryPlace,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> Tuple[DeliveryPlace, bool]:
    """Insert or update a delivery place by sap_id.

    Returns:
        Tuple of (stored delivery place, True if it was created)
    """
    now = _now()
    conn = connect(db_path)
    try:
        existing = conn.execute(
            "SELECT id FROM delivery_place WHERE sap_id = ?", (delivery_place.sap_id,)
        ).fetchone()
        conn.execute("""
            INSERT INTO delivery_place (sap_id, name, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(sap_id) DO UPDATE SET
                name = excluded.name,
                updated_at = excluded.updated_at
        """, (delivery_place.sap_id, delivery_place.name, now, now))
        conn.commit()
        row = conn.execute(
            "SELECT * FROM delivery_place WHERE sap_id = ?", (delivery_place.sap_id,)
        ).fetchone()
        return _row_to_delivery_place(row), existing is None
    finally:
        conn.close()


# =============================================================================
# Item groups and products
# =============================================================================

def _row_to_item_group(row: sqlite3.Row) -> ItemGroup:
    return ItemGroup(
        id=row["id"],
        sap_id=row["sap_id"],
        name=row["name"],
        display_name=row["display_name"],
        category=ItemGroupCategory(row["category"]),
        minimum_profit_estimation=row["minimum_profit_estimation"],
        prerequisite_contract_item_group_id=row["prerequisite_contract_item_group_id"],
    )


def get_item_group(item_group_id: int, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[ItemGroup]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM item_group WHERE id = ?", (item_group_id,)).fetchone()
        return _row_to_item_group(row) if row else None
    finally:
        conn.close()


def find_item_group_by_sap_id(sap_id: str, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[ItemGroup]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM item_group WHERE sap_id = ?", (sap_id,)).fetchone()
        return _row_to_item_group(row) if row else None
    finally:
        conn.close()


def list_item_groups(db_path: DbPath = DEFAULT_DB_PATH) -> List[ItemGroup]:
    conn = connect(db_path)
    try:
        rows = conn.execute("SELECT * FROM item_group ORDER BY id").fetchall()
        return [_row_to_item_group(row) for row in rows]
    finally:
        conn.close()


def upsert_item_group(item_group: ItemGroup, db_path: DbPath = DEFAULT_DB_PATH) -> Tuple[ItemGroup, bool]:
    """Insert or update an item group by sap_id.

    Returns:
        Tuple of (stored item group, True if it was created)
    """
    now = _now()
    conn = connect(db_path)
    try:
        existing = conn.execute(
            "SELECT id FROM item_group WHERE sap_id = ?", (item_group.sap_id,)
        ).fetchone()
        conn.execute("""
            INSERT INTO item_group
            (sap_id, name, display_name, category, minimum_profit_estimation,
             prerequisite_contract_item_group_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(sap_id) DO UPDATE SET
                name = excluded.name,
                display_name = excluded.display_name,
                category = excluded.category,
                minimum_profit_estimation = excluded.minimum_profit_estimation,
                prerequisite_contract_item_group_id = excluded.prerequisite_contract_item_group_id,
                updated_at = excluded.updated_at
        """, (
            item_group.sap_id,
            item_group.name,
            item_group.display_name,
            item_group.category.value,
            item_group.minimum_profit_estimation,
            item_group.prerequisite_contract_item_group_id,
            now,
            now,
        ))
        conn.commit()
        row = conn.execute("SELECT * FROM item_group WHERE sap_id = ?", (item_group.sap_id,)).fetchone()
        return _row_to_item_group(row), existing is None
    finally:
        conn.close()


def add_product(product: Product, db_path: DbPath = DEFAULT_DB_PATH) -> Product:
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            INSERT INTO product (item_group_id, sap_item_code, name)
            VALUES (?, ?, ?)
        """, (product.item_group_id, product.sap_item_code, product.name))
        conn.commit()
        product.id = cursor.lastrowid
        return product
    finally:
        conn.close()


def list_products_by_item_group(item_group_id: int, db_path: DbPath = DEFAULT_DB_PATH) -> List[Product]:
    conn = connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM product WHERE item_group_id = ? ORDER BY id", (item_group_id,)
        ).fetchall()
        return [
            Product(
                id=row["id"],
                item_group_id=row["item_group_id"],
                sap_item_code=row["sap_item_code"],
                name=row["name"],
            )
            for row in rows
        ]
    finally:
        conn.close()


# =============================================================================
# Contracts
# =============================================================================

_CONTRACT_COLUMNS = [
    "user_id", "year", "sap_id", "delivery_place_id", "proposed_delivery_place_id",
    "item_group_id", "contract_quantity", "delivered_quantity", "proposed_quantity",
    "start_date", "end_date", "sign_date", "term_date", "status", "area_details",
    "deliver_all", "remarks", "delivery_place_comment", "quantity_comment", "reject_comment",
]


def _contract_values(contract: Contract) -> List[Any]:
    return [
        contract.user_id,
        contract.year,
        contract.sap_id,
        contract.delivery_place_id,
        contract.proposed_delivery_place_id,
        contract.item_group_id,
        contract.contract_quantity,
        contract.delivered_quantity,
        contract.proposed_quantity,
        _date_to_str(contract.start_date),
        _date_to_str(contract.end_date),
        _date_to_str(contract.sign_date),
        _date_to_str(contract.term_date),
        contract.status.value,
        contract.area_details,
        1 if contract.deliver_all else 0,
        contract.remarks,
        contract.delivery_place_comment,
        contract.quantity_comment,
        contract.reject_comment,
    ]


def _row_to_contract(row: sqlite3.Row) -> Contract:
    return Contract(
        id=row["id"],
        user_id=row["user_id"],
        year=row["year"],
        sap_id=row["sap_id"],
        delivery_place_id=row["delivery_place_id"],
        proposed_delivery_place_id=row["proposed_delivery_place_id"],
        item_group_id=row["item_group_id"],
        contract_quantity=row["contract_quantity"],
        delivered_quantity=row["delivered_quantity"],
        proposed_quantity=row["proposed_quantity"],
        start_date=_str_to_date(row["start_date"]),
        end_date=_str_to_date(row["end_date"]),
        sign_date=_str_to_date(row["sign_date"]),
        term_date=_str_to_date(row["term_date"]),
        status=ContractStatus(row["status"]),
        area_details=row["area_details"],
        deliver_all=bool(row["deliver_all"]),
        remarks=row["remarks"],
        delivery_place_comment=row["delivery_place_comment"],
        quantity_comment=row["quantity_comment"],
        reject_comment=row["reject_comment"],
    )


def create_contract(contract: Contract, db_path: DbPath = DEFAULT_DB_PATH) -> Contract:
    """Insert a new contract.

    Raises:
        sqlite3.IntegrityError: If a contract with the same sap_id exists
    """
    now = _now()
    columns = _CONTRACT_COLUMNS + ["created_at", "updated_at"]
    placeholders = ", ".join("?" for _ in columns)
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            f"INSERT INTO contract ({', '.join(columns)}) VALUES ({placeholders})",
            _contract_values(contract) + [now, now],
        )
        conn.commit()
        return contract.model_copy(update={"id": cursor.lastrowid})
    finally:
        conn.close()


def update_contract(contract: Contract, db_path: DbPath = DEFAULT_DB_PATH) -> Contract:
    if contract.id is None:
        raise ValueError("Cannot update a contract without an id")

    assignments = ", ".join(f"{column} = ?" for column in _CONTRACT_COLUMNS)
    conn = connect(db_path)
    try:
        conn.execute(
            f"UPDATE contract SET {assignments}, updated_at = ? WHERE id = ?",
            _contract_values(contract) + [_now(), contract.id],
        )
        conn.commit()
        return contract
    finally:
        conn.close()


def get_contract(contract_id: int, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[Contract]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM contract WHERE id = ?", (contract_id,)).fetchone()
        return _row_to_contract(row) if row else None
    finally:
        conn.close()


def find_contract_by_sap_id(sap_id: str, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[Contract]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM contract WHERE sap_id = ?", (sap_id,)).fetchone()
        return _row_to_contract(row) if row else None
    finally:
        conn.close()


def list_contracts(
    status: Optional[ContractStatus] = None,
    has_sap_id: Optional[bool] = None,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> List[Contract]:
    """List contracts, optionally filtered by status and sap_id presence."""
    clauses = []
    params: List[Any] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    if has_sap_id is True:
        clauses.append("sap_id IS NOT NULL")
    elif has_sap_id is False:
        clauses.append("sap_id IS NULL")

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    conn = connect(db_path)
    try:
        rows = conn.execute(f"SELECT * FROM contract {where} ORDER BY id", params).fetchall()
        return [_row_to_contract(row) for row in rows]
    finally:
        conn.close()


# =============================================================================
# Operation reports
# =============================================================================

def create_operation_report(
    operation_type: OperationType,
    external_id: str,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> OperationReport:
    now = datetime.utcnow()
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            INSERT INTO operation_report (external_id, type, created_at)
            VALUES (?, ?, ?)
        """, (external_id, operation_type.value, now.isoformat()))
        conn.commit()
        return OperationReport(
            id=cursor.lastrowid,
            external_id=external_id,
            type=operation_type,
            created_at=now,
        )
    finally:
        conn.close()


def _row_to_operation_report(row: sqlite3.Row) -> OperationReport:
    return OperationReport(
        id=row["id"],
        external_id=row["external_id"],
        type=OperationType(row["type"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def get_operation_report(report_id: int, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[OperationReport]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM operation_report WHERE id = ?", (report_id,)).fetchone()
        return _row_to_operation_report(row) if row else None
    finally:
        conn.close()


def find_operation_report_by_external_id(
    external_id: str,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> Optional[OperationReport]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM operation_report WHERE external_id = ?", (external_id,)
        ).fetchone()
        return _row_to_operation_report(row) if row else None
    finally:
        conn.close()


def list_operation_reports(db_path: DbPath = DEFAULT_DB_PATH) -> List[OperationReport]:
    conn = connect(db_path)
    try:
        rows = conn.execute("SELECT * FROM operation_report ORDER BY created_at DESC, id DESC").fetchall()
        return [_row_to_operation_report(row) for row in rows]
    finally:
        conn.close()


def _row_to_operation_report_item(row: sqlite3.Row) -> OperationReportItem:
    return OperationReportItem(
        id=row["id"],
        operation_report_id=row["operation_report_id"],
        message=row["message"],
        completed=bool(row["completed"]),
        success=bool(row["success"]),
    )


def create_operation_report_item(
    operation_report_id: int,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> OperationReportItem:
    """Append a pending item to a report."""
    now = _now()
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            INSERT INTO operation_report_item
            (operation_report_id, message, completed, success, created_at, updated_at)
            VALUES (?, NULL, 0, 0, ?, ?)
        """, (operation_report_id, now, now))
        conn.commit()
        return OperationReportItem(id=cursor.lastrowid, operation_report_id=operation_report_id)
    finally:
        conn.close()


def complete_operation_report_item(
    item_id: int,
    message: str,
    success: bool,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> bool:
    """Mark a pending item completed.

    Only the first completion is applied.

    Returns:
        True if the item was pending and is now completed
    """
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE operation_report_item
            SET message = ?, completed = 1, success = ?, updated_at = ?
            WHERE id = ? AND completed = 0
        """, (message, 1 if success else 0, _now(), item_id))
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


def get_operation_report_item(item_id: int, db_path: DbPath = DEFAULT_DB_PATH) -> Optional[OperationReportItem]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM operation_report_item WHERE id = ?", (item_id,)).fetchone()
        return _row_to_operation_report_item(row) if row else None
    finally:
        conn.close()


def list_operation_report_items(
    operation_report_id: int,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> List[OperationReportItem]:
    conn = connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM operation_report_item WHERE operation_report_id = ? ORDER BY id",
            (operation_report_id,),
        ).fetchall()
        return [_row_to_operation_report_item(row) for row in rows]
    finally:
        conn.close()


def count_operation_report_items(
    operation_report_id: int,
    db_path: DbPath = DEFAULT_DB_PATH,
) -> Dict[str, int]:
    """Count a report's items by flag.

    Returns:
        Dict with pending, failed and success counts
    """
    conn = connect(db_path)
    try:
        row = conn.execute("""
            SELECT
                COALESCE(SUM(CASE WHEN completed = 0 THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(SUM(CASE WHEN completed = 1 AND success = 0 THEN 1 ELSE 0 END), 0) AS failed,
                COALESCE(SUM(CASE WHEN completed = 1 AND success = 1 THEN 1 ELSE 0 END), 0) AS success
            FROM operation_report_item
            WHERE operation_report_id = ?
        """, (operation_report_id,)).fetchone()
        return {"pending": row["pending"], "failed": row["failed"], "success": row["success"]}
    finally:
        conn.close()


# =============================================================================
# Chat groups and threads
# =============================================================================

def create_chat_group(chat_group: ChatGroup, db_path: DbPath = DEFAULT_DB_PATH) -> ChatGroup:
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            "INSERT INTO chat_group (title, type) VALUES (?, ?)",
            (chat_group.title, chat_group.type),
        )
        conn.commit()
        return chat_group.model_copy(update={"id": cursor.lastrowid})
    finally:
        conn.close()


def list_chat_groups(db_path: DbPath = DEFAULT_DB_PATH) -> List[ChatGroup]:
    conn = connect(db_path)
    try:
        rows = conn.execute("SELECT * FROM chat_group ORDER BY id").fetchall()
        return [ChatGroup(id=row["id"], title=row["title"], type=row["type"]) for row in rows]
    finally:
        conn.close()


def create_chat_thread(chat_thread: ChatThread, db_path: DbPath = DEFAULT_DB_PATH) -> ChatThread:
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            "INSERT INTO chat_thread (chat_group_id, title) VALUES (?, ?)",
            (chat_thread.chat_group_id, chat_thread.title),
        )
        conn.commit()
        return chat_thread.model_copy(update={"id": cursor.lastrowid})
    finally:
        conn.close()


def list_chat_threads(chat_group_id: int, db_path: DbPath = DEFAULT_DB_PATH) -> List[ChatThread]:
    conn = connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM chat_thread WHERE chat_group_id = ? ORDER BY id", (chat_group_id,)
        ).fetchall()
        return [
            ChatThread(id=row["id"], chat_group_id=row["chat_group_id"], title=row["title"])
            for row in rows
        ]
    finally:
        conn.close()

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Tuple

from flask import (
    Flask,
    Response,
    jsonify,
    request,
    session,
    stream_with_context,
)
from flask_cors import CORS
from werkzeug.security import check_password_hash, generate_password_hash

from .balances import aggregate, net_balances, serialize_balances, serialize_suggestions, suggest
from .chat import ChatHub, direct_room, group_room
from .config import Config, load_config
from .db import Database
from .errors import InvalidPayload, SplitLedgerError
from .models import (
    Expense,
    Group,
    GroupMember,
    LinkedExpense,
    Settlement,
    SettlementStatus,
    Split,
    check_fields,
)
from .money import to_decimal
from .splits import SplitStrategy, validate

logger = logging.getLogger(__name__)

STREAM_KEEPALIVE_SECONDS = 15


def create_app(
    config: Optional[Config] = None,
    database: Optional[Database] = None,
    hub: Optional[ChatHub] = None,
) -> Flask:
    config = config or load_config()
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    db = database if database is not None else Database(config)
    hub = hub if hub is not None else ChatHub()
    app.extensions["splitledger"] = {"db": db, "hub": hub}

    register_error_handlers(app)
    register_routes(app, db, hub)
    return app


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(SplitLedgerError)
    def handle_domain_error(exc: SplitLedgerError):
        if exc.status >= 500:
            logger.error("request to %s failed: %s", request.path, exc, exc_info=exc)
        return jsonify(exc.to_dict()), exc.status


def register_routes(app: Flask, db: Database, hub: ChatHub) -> None:
    _register_auth_routes(app, db)
    _register_user_routes(app, db)
    _register_group_routes(app, db)
    _register_expense_routes(app, db)
    _register_settlement_routes(app, db)
    _register_chat_routes(app, db, hub)


# ----------------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------------


def _register_auth_routes(app: Flask, db: Database) -> None:
    @app.post("/api/register")
    def register():
        payload = check_fields(
            request.get_json(force=True, silent=True),
            required=("name", "email", "password"),
            optional=("avatar",),
        )
        name = str(payload["name"]).strip()
        email = str(payload["email"]).strip().lower()
        password = str(payload["password"])

        if not name or not email:
            return jsonify({"error": "missing_fields"}), 400

        existing = db.fetch_one("SELECT id FROM users WHERE email=%s", (email,))
        if existing:
            return jsonify({"error": "email_in_use"}), 409

        password_hash = generate_password_hash(password)
        user_id = db.execute(
            "INSERT INTO users (name, email, password, avatar) VALUES (%s, %s, %s, %s)",
            (name, email, password_hash, payload.get("avatar")),
        )
        logger.info("registered user %s", user_id)

        session["user_id"] = user_id
        session["user_name"] = name

        return jsonify({"id": user_id, "name": name, "email": email}), 201

    @app.post("/api/login")
    def login():
        payload = check_fields(
            request.get_json(force=True, silent=True),
            required=("email", "password"),
        )
        email = str(payload["email"]).strip().lower()
        password = str(payload["password"])

        user = db.fetch_one("SELECT id, name, password FROM users WHERE email=%s", (email,))
        if not user or not check_password_hash(user["password"], password):
            return jsonify({"error": "invalid_credentials"}), 401

        session["user_id"] = user["id"]
        session["user_name"] = user["name"]

        return jsonify({"id": user["id"], "name": user["name"], "email": email})

    @app.post("/api/logout")
    @require_login
    def logout():
        session.clear()
        return jsonify({"status": "ok"})

    @app.get("/api/session")
    def get_session():
        if "user_id" in session:
            return jsonify(
                {
                    "authenticated": True,
                    "user": {"id": session["user_id"], "name": session["user_name"]},
                }
            )
        return jsonify({"authenticated": False})


# ----------------------------------------------------------------------------
# users and friends
# ----------------------------------------------------------------------------


def _register_user_routes(app: Flask, db: Database) -> None:
    @app.get("/api/users")
    @require_login
    def list_users():
        users = db.fetch_all("SELECT id, name, email, avatar FROM users ORDER BY name")
        return jsonify(users)

    @app.get("/api/users/search")
    @require_login
    def search_users():
        query = (request.args.get("query") or "").strip()
        if not query:
            return jsonify({"error": "missing_query"}), 400

        pattern = f"%{query}%"
        users = db.fetch_all(
            """
            SELECT id, name, email, avatar
            FROM users
            WHERE name LIKE %s OR email LIKE %s
            ORDER BY name
            """,
            (pattern, pattern),
        )
        return jsonify(users)

    @app.get("/api/users/<int:user_id>")
    @require_login
    def get_user(user_id: int):
        user = db.fetch_one("SELECT id, name, email, avatar FROM users WHERE id=%s", (user_id,))
        if not user:
            return jsonify({"error": "user_not_found"}), 404
        return jsonify(user)

    @app.put("/api/users/profile")
    @require_login
    def update_profile():
        payload = check_fields(
            request.get_json(force=True, silent=True),
            optional=("name", "avatar"),
        )
        user_id = session["user_id"]
        user = db.fetch_one("SELECT id, name, email, avatar FROM users WHERE id=%s", (user_id,))
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        name = str(payload.get("name") or user["name"]).strip()
        if not name:
            return jsonify({"error": "missing_fields"}), 400
        avatar = payload.get("avatar") or user["avatar"]
        db.execute("UPDATE users SET name=%s, avatar=%s WHERE id=%s", (name, avatar, user_id))
        session["user_name"] = name

        return jsonify({"id": user_id, "name": name, "email": user["email"], "avatar": avatar})

    @app.get("/api/users/friends")
    @require_login
    def list_friends():
        friends = db.fetch_all(
            """
            SELECT u.id, u.name, u.email, u.avatar
            FROM friends f
            JOIN users u ON f.friend_id = u.id
            WHERE f.user_id=%s
            ORDER BY u.name
            """,
            (session["user_id"],),
        )
        return jsonify(friends)

    @app.post("/api/users/friends/<int:friend_id>")
    @require_login
    def add_friend(friend_id: int):
        user_id = session["user_id"]
        if friend_id == user_id:
            return jsonify({"error": "cannot_friend_self"}), 400

        friend = db.fetch_one("SELECT id FROM users WHERE id=%s", (friend_id,))
        if not friend:
            return jsonify({"error": "user_not_found"}), 404

        existing = db.fetch_one(
            "SELECT id FROM friends WHERE user_id=%s AND friend_id=%s",
            (user_id, friend_id),
        )
        if existing:
            return jsonify({"error": "already_friends"}), 400

        with db.transaction() as tx:
            tx.execute("INSERT INTO friends (user_id, friend_id) VALUES (%s, %s)", (user_id, friend_id))
            tx.execute("INSERT INTO friends (user_id, friend_id) VALUES (%s, %s)", (friend_id, user_id))

        return jsonify({"status": "friend_added"}), 201

    @app.delete("/api/users/friends/<int:friend_id>")
    @require_login
    def remove_friend(friend_id: int):
        user_id = session["user_id"]
        friend = db.fetch_one("SELECT id FROM users WHERE id=%s", (friend_id,))
        if not friend:
            return jsonify({"error": "user_not_found"}), 404

        with db.transaction() as tx:
            tx.execute(
                "DELETE FROM friends WHERE (user_id=%s AND friend_id=%s) OR (user_id=%s AND friend_id=%s)",
                (user_id, friend_id, friend_id, user_id),
            )

        return jsonify({"status": "friend_removed"})


# ----------------------------------------------------------------------------
# groups
# ----------------------------------------------------------------------------


def _register_group_routes(app: Flask, db: Database) -> None:
    @app.post("/api/groups")
    @require_login
    def create_group():
        payload = check_fields(
            request.get_json(force=True, silent=True),
            required=("name",),
            optional=("description", "members"),
        )
        user_id = session["user_id"]
        member_ids = _parse_ids(payload.get("members") or [], "members")

        missing = set(member_ids) - _existing_user_ids(db, member_ids)
        if missing:
            return jsonify({"error": "user_not_found", "users": sorted(missing)}), 404

        group = Group(
            id=None,
            name=str(payload["name"]).strip(),
            created_by=user_id,
            description=payload.get("description"),
            members=tuple(GroupMember(member_id) for member_id in member_ids),
        )

        with db.transaction() as tx:
            group_id = tx.execute(
                "INSERT INTO `groups` (name, description, created_by) VALUES (%s, %s, %s)",
                (group.name, group.description, group.created_by),
            )
            for member in group.members:
                tx.execute(
                    "INSERT INTO group_members (group_id, user_id, is_admin) VALUES (%s, %s, %s)",
                    (group_id, member.user, member.is_admin),
                )
        logger.info("user %s created group %s with %d members", user_id, group_id, len(group.members))

        return jsonify(_group_payload(db, group_id)), 201

    @app.get("/api/groups")
    @require_login
    def list_groups():
        groups = db.fetch_all(
            """
            SELECT g.id, g.name, g.description, g.created_by, u.name AS created_by_name
            FROM `groups` g
            JOIN users u ON g.created_by = u.id
            JOIN group_members gm ON gm.group_id = g.id
            WHERE gm.user_id = %s
            ORDER BY g.created_at DESC
            """,
            (session["user_id"],),
        )
        return jsonify(groups)

    @app.get("/api/groups/<int:group_id>")
    @require_login
    def get_group(group_id: int):
        group = _load_group(db, group_id)
        if group is None:
            return jsonify({"error": "group_not_found"}), 404
        if not group.has_member(session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        return jsonify(_group_payload(db, group_id))

    @app.put("/api/groups/<int:group_id>")
    @require_login
    def update_group(group_id: int):
        payload = check_fields(
            request.get_json(force=True, silent=True),
            optional=("name", "description"),
        )
        group = _load_group(db, group_id)
        if group is None:
            return jsonify({"error": "group_not_found"}), 404
        if not group.is_admin(session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403

        name = str(payload.get("name") or group.name).strip()
        if not name:
            return jsonify({"error": "missing_fields"}), 400
        description = payload.get("description") or group.description
        db.execute(
            "UPDATE `groups` SET name=%s, description=%s WHERE id=%s",
            (name, description, group_id),
        )
        return jsonify(_group_payload(db, group_id))

    @app.delete("/api/groups/<int:group_id>")
    @require_login
    def delete_group(group_id: int):
        group = _load_group(db, group_id)
        if group is None:
            return jsonify({"error": "group_not_found"}), 404
        if not group.is_admin(session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403

        db.execute("DELETE FROM `groups` WHERE id=%s", (group_id,))
        logger.info("user %s deleted group %s", session["user_id"], group_id)
        return jsonify({"status": "deleted"})

    @app.post("/api/groups/<int:group_id>/members")
    @require_login
    def add_members(group_id: int):
        payload = check_fields(request.get_json(force=True, silent=True), required=("members",))
        member_ids = _parse_ids(payload["members"], "members")

        group = _load_group(db, group_id)
        if group is None:
            return jsonify({"error": "group_not_found"}), 404
        if not group.is_admin(session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403

        missing = set(member_ids) - _existing_user_ids(db, member_ids)
        if missing:
            return jsonify({"error": "user_not_found", "users": sorted(missing)}), 404

        updated = group.add_members(member_ids)
        added = updated.member_ids[len(group.members):]
        with db.transaction() as tx:
            for user_id in added:
                tx.execute(
                    "INSERT INTO group_members (group_id, user_id, is_admin) VALUES (%s, %s, %s)",
                    (group_id, user_id, False),
                )
        logger.info("added %d members to group %s", len(added), group_id)

        return jsonify(_group_payload(db, group_id))

    @app.delete("/api/groups/<int:group_id>/members/<int:user_id>")
    @require_login
    def remove_member(group_id: int, user_id: int):
        group = _load_group(db, group_id)
        if group is None:
            return jsonify({"error": "group_not_found"}), 404

        actor = session["user_id"]
        if not group.is_admin(actor) and actor != user_id:
            return jsonify({"error": "not_authorized"}), 403

        # raises for the creator or a non-member
        group.remove_member(user_id)

        # dropping someone who still appears in the ledger would break every balance
        if _has_ledger_entries(db, group_id, user_id):
            return jsonify({"error": "member_has_expenses"}), 400

        db.execute(
            "DELETE FROM group_members WHERE group_id=%s AND user_id=%s",
            (group_id, user_id),
        )
        logger.info("user %s removed %s from group %s", actor, user_id, group_id)
        return jsonify(_group_payload(db, group_id))

    @app.get("/api/groups/<int:group_id>/balances")
    @require_login
    def get_group_balances(group_id: int):
        if not _user_in_group(db, session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        members = _member_rows(db, group_id)
        expenses = _load_expenses(db, "group_id=%s", (group_id,))
        settlements = _load_settlements(
            db,
            "s.group_id=%s AND s.status=%s",
            (group_id, SettlementStatus.COMPLETED.value),
        )

        balances = aggregate([member["id"] for member in members], expenses, settlements)
        suggestions = suggest(net_balances(balances))
        names = {member["id"]: member["name"] for member in members}

        return jsonify(
            {
                "balances": serialize_balances(balances),
                "suggestions": serialize_suggestions(suggestions, names),
            }
        )


# ----------------------------------------------------------------------------
# expenses
# ----------------------------------------------------------------------------

EXPENSE_FIELDS = ("paid_by", "split_type", "splits", "category", "notes", "receipt", "date")


def _register_expense_routes(app: Flask, db: Database) -> None:
    @app.post("/api/groups/<int:group_id>/expenses")
    @require_login
    def add_expense(group_id: int):
        payload = check_fields(
            request.get_json(force=True, silent=True),
            required=("description", "amount", "splits"),
            optional=EXPENSE_FIELDS,
        )
        if not _user_in_group(db, session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        member_ids = {member["id"] for member in _member_rows(db, group_id)}
        amount = to_decimal(payload["amount"])
        strategy = SplitStrategy.parse(payload.get("split_type") or SplitStrategy.EQUAL.value)
        entries = _parse_split_entries(payload["splits"])

        if not all(user_id in member_ids for user_id, _ in entries):
            return jsonify({"error": "invalid_split_members"}), 400

        paid_by = payload.get("paid_by")
        payer = session["user_id"] if paid_by is None else _parse_id(paid_by, "paid_by")
        if payer not in member_ids:
            return jsonify({"error": "payer_not_in_group"}), 400

        expense = Expense(
            id=None,
            description=str(payload["description"]).strip(),
            amount=amount,
            payer=payer,
            splits=validate(amount, strategy, entries),
            date=_parse_date(payload.get("date")),
            category=payload.get("category") or "Other",
            notes=payload.get("notes"),
            group=group_id,
            receipt=payload.get("receipt"),
        )

        with db.transaction() as tx:
            expense_id = tx.execute(
                """
                INSERT INTO expenses
                    (group_id, description, amount, paid_by, category, notes, receipt, expense_date)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    group_id,
                    expense.description,
                    str(expense.amount),
                    expense.payer,
                    expense.category,
                    expense.notes,
                    expense.receipt,
                    expense.date,
                ),
            )
            _insert_splits(tx, expense_id, expense.splits)
        logger.info(
            "expense %s added to group %s: %s split %s ways (%s)",
            expense_id,
            group_id,
            expense.amount,
            len(expense.splits),
            strategy.value,
        )

        return jsonify({**expense.to_dict(), "id": expense_id}), 201

    @app.get("/api/groups/<int:group_id>/expenses")
    @require_login
    def get_group_expenses(group_id: int):
        if not _user_in_group(db, session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        names = {member["id"]: member["name"] for member in _member_rows(db, group_id)}
        expenses = _load_expenses(db, "group_id=%s", (group_id,))
        return jsonify([_expense_payload(expense, names) for expense in expenses])

    @app.get("/api/expenses")
    @require_login
    def list_user_expenses():
        user_id = session["user_id"]
        expenses = _load_expenses(
            db,
            "paid_by=%s OR id IN (SELECT expense_id FROM expense_splits WHERE user_id=%s)",
            (user_id, user_id),
        )
        return jsonify([expense.to_dict() for expense in expenses])

    @app.get("/api/expenses/<int:expense_id>")
    @require_login
    def get_expense(expense_id: int):
        expense = _find_expense(db, expense_id)
        if expense is None:
            return jsonify({"error": "expense_not_found"}), 404
        if not _user_in_group(db, session["user_id"], expense.group):
            return jsonify({"error": "not_authorized"}), 403

        names = {member["id"]: member["name"] for member in _member_rows(db, expense.group)}
        return jsonify(_expense_payload(expense, names))

    @app.put("/api/expenses/<int:expense_id>")
    @require_login
    def update_expense(expense_id: int):
        payload = check_fields(
            request.get_json(force=True, silent=True),
            optional=("description", "amount") + EXPENSE_FIELDS,
        )
        expense = _find_expense(db, expense_id)
        if expense is None:
            return jsonify({"error": "expense_not_found"}), 404
        if expense.payer != session["user_id"]:
            return jsonify({"error": "forbidden_only_payer_can_update"}), 403

        member_ids = {member["id"] for member in _member_rows(db, expense.group)}
        amount = to_decimal(payload["amount"]) if payload.get("amount") is not None else expense.amount
        requested = payload.get("split_type")
        strategy = SplitStrategy.parse(requested or SplitStrategy.EQUAL.value)

        # the strategy behind stored splits is not kept, so a new amount
        # needs new splits unless the caller asks for an equal re-split
        splits_changed = payload.get("splits") is not None or amount != expense.amount
        if payload.get("splits") is not None:
            entries = _parse_split_entries(payload["splits"])
        elif amount != expense.amount and requested and strategy is SplitStrategy.EQUAL:
            entries = [(split.user, None) for split in expense.splits]
        elif amount != expense.amount:
            raise InvalidPayload("splits", code="missing_fields")
        else:
            entries = []

        if not all(user_id in member_ids for user_id, _ in entries):
            return jsonify({"error": "invalid_split_members"}), 400

        payer = expense.payer
        if payload.get("paid_by") is not None:
            payer = _parse_id(payload["paid_by"], "paid_by")
            if payer not in member_ids:
                return jsonify({"error": "payer_not_in_group"}), 400

        updated = Expense(
            id=expense.id,
            description=str(payload.get("description") or expense.description).strip(),
            amount=amount,
            payer=payer,
            splits=validate(amount, strategy, entries) if splits_changed else expense.splits,
            date=_parse_date(payload["date"]) if payload.get("date") else expense.date,
            category=payload.get("category") or expense.category,
            notes=payload.get("notes", expense.notes),
            group=expense.group,
            receipt=payload.get("receipt", expense.receipt),
        )

        with db.transaction() as tx:
            tx.execute(
                """
                UPDATE expenses
                SET description=%s, amount=%s, paid_by=%s, category=%s, notes=%s, receipt=%s,
                    expense_date=%s
                WHERE id=%s
                """,
                (
                    updated.description,
                    str(updated.amount),
                    updated.payer,
                    updated.category,
                    updated.notes,
                    updated.receipt,
                    updated.date,
                    expense_id,
                ),
            )
            if splits_changed:
                tx.execute("DELETE FROM expense_splits WHERE expense_id=%s", (expense_id,))
                _insert_splits(tx, expense_id, updated.splits)
        logger.info("expense %s updated by %s", expense_id, session["user_id"])

        return jsonify(updated.to_dict())

    @app.delete("/api/expenses/<int:expense_id>")
    @require_login
    def delete_expense(expense_id: int):
        expense = _find_expense(db, expense_id)
        if expense is None:
            return jsonify({"error": "expense_not_found"}), 404

        # Only the user who paid the expense may delete it
        if expense.payer != session["user_id"]:
            return jsonify({"error": "forbidden_only_payer_can_delete"}), 403

        with db.transaction() as tx:
            tx.execute("DELETE FROM settlement_expenses WHERE expense_id=%s", (expense_id,))
            tx.execute("DELETE FROM expense_splits WHERE expense_id=%s", (expense_id,))
            tx.execute("DELETE FROM expenses WHERE id=%s", (expense_id,))
        logger.info("expense %s deleted by %s", expense_id, session["user_id"])

        return jsonify({"status": "deleted"}), 200


# ----------------------------------------------------------------------------
# settlements
# ----------------------------------------------------------------------------


def _register_settlement_routes(app: Flask, db: Database) -> None:
    @app.post("/api/settlements")
    @require_login
    def create_settlement():
        payload = check_fields(
            request.get_json(force=True, silent=True),
            required=("receiver", "amount"),
            optional=("group", "expenses", "notes"),
        )
        payer = session["user_id"]
        receiver = _parse_id(payload["receiver"], "receiver")
        group_id = _parse_id(payload["group"], "group") if payload.get("group") is not None else None

        if not _existing_user_ids(db, [receiver]):
            return jsonify({"error": "user_not_found"}), 404
        if group_id is not None:
            if not _user_in_group(db, payer, group_id):
                return jsonify({"error": "not_authorized"}), 403
            if not _user_in_group(db, receiver, group_id):
                return jsonify({"error": "receiver_not_in_group"}), 400

        linked = _parse_linked_expenses(payload.get("expenses") or [])
        for item in linked:
            row = db.fetch_one("SELECT id, group_id FROM expenses WHERE id=%s", (item.expense,))
            if not row or (group_id is not None and row["group_id"] != group_id):
                return jsonify({"error": "invalid_linked_expense", "expense_id": item.expense}), 400

        settlement = Settlement(
            id=None,
            payer=payer,
            receiver=receiver,
            amount=to_decimal(payload["amount"]),
            group=group_id,
            linked_expenses=linked,
            notes=payload.get("notes"),
        )

        with db.transaction() as tx:
            settlement_id = tx.execute(
                """
                INSERT INTO settlements (payer_id, receiver_id, amount, group_id, notes, status)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    settlement.payer,
                    settlement.receiver,
                    str(settlement.amount),
                    settlement.group,
                    settlement.notes,
                    settlement.status.value,
                ),
            )
            for item in settlement.linked_expenses:
                tx.execute(
                    "INSERT INTO settlement_expenses (settlement_id, expense_id, amount) VALUES (%s, %s, %s)",
                    (settlement_id, item.expense, str(item.amount)),
                )
        logger.info("settlement %s recorded: %s -> %s, %s", settlement_id, payer, receiver, settlement.amount)

        return jsonify({**settlement.to_dict(), "id": settlement_id}), 201

    @app.get("/api/settlements")
    @require_login
    def list_settlements():
        user_id = session["user_id"]
        settlements = _load_settlements(db, "s.payer_id=%s OR s.receiver_id=%s", (user_id, user_id))
        return jsonify([settlement.to_dict() for settlement in settlements])

    @app.get("/api/settlements/<int:settlement_id>")
    @require_login
    def get_settlement(settlement_id: int):
        settlement = _find_settlement(db, settlement_id)
        if settlement is None:
            return jsonify({"error": "settlement_not_found"}), 404
        if session["user_id"] not in (settlement.payer, settlement.receiver):
            return jsonify({"error": "not_authorized"}), 403
        return jsonify(settlement.to_dict())

    @app.put("/api/settlements/<int:settlement_id>")
    @require_login
    def update_settlement(settlement_id: int):
        payload = check_fields(request.get_json(force=True, silent=True), required=("status",))
        status = SettlementStatus.parse(payload["status"])

        settlement = _find_settlement(db, settlement_id)
        if settlement is None:
            return jsonify({"error": "settlement_not_found"}), 404

        # Only the receiver confirms or rejects a payment
        if settlement.receiver != session["user_id"]:
            return jsonify({"error": "not_authorized"}), 403

        updated = settlement.transition(status)

        # a completed group settlement feeds that group's balances
        if updated.status is SettlementStatus.COMPLETED and updated.group is not None:
            for party in (updated.payer, updated.receiver):
                if not _user_in_group(db, party, updated.group):
                    return jsonify({"error": "party_not_in_group", "user_id": party}), 409

        with db.transaction() as tx:
            tx.execute("UPDATE settlements SET status=%s WHERE id=%s", (updated.status.value, settlement_id))
            if updated.status is SettlementStatus.COMPLETED:
                for item in updated.linked_expenses:
                    tx.execute(
                        "UPDATE expense_splits SET settled=TRUE WHERE expense_id=%s AND user_id=%s",
                        (item.expense, updated.payer),
                    )
        logger.info("settlement %s is now %s", settlement_id, updated.status.value)

        return jsonify(updated.to_dict())

    @app.delete("/api/settlements/<int:settlement_id>")
    @require_login
    def delete_settlement(settlement_id: int):
        settlement = _find_settlement(db, settlement_id)
        if settlement is None:
            return jsonify({"error": "settlement_not_found"}), 404

        # Only the payer can delete, and only while pending
        if settlement.payer != session["user_id"] or settlement.status is not SettlementStatus.PENDING:
            return jsonify({"error": "not_authorized"}), 403

        with db.transaction() as tx:
            tx.execute("DELETE FROM settlement_expenses WHERE settlement_id=%s", (settlement_id,))
            tx.execute("DELETE FROM settlements WHERE id=%s", (settlement_id,))

        return jsonify({"status": "deleted"})


# ----------------------------------------------------------------------------
# chat
# ----------------------------------------------------------------------------


def _register_chat_routes(app: Flask, db: Database, hub: ChatHub) -> None:
    @app.get("/api/chats")
    @require_login
    def list_chats():
        user_id = session["user_id"]
        groups = db.fetch_all(
            """
            SELECT g.id, g.name
            FROM `groups` g
            JOIN group_members gm ON gm.group_id = g.id
            WHERE gm.user_id=%s
            ORDER BY g.name
            """,
            (user_id,),
        )
        direct_rows = db.fetch_all(
            """
            SELECT DISTINCT room
            FROM chat_messages
            WHERE room LIKE %s OR room LIKE %s
            ORDER BY room
            """,
            (f"direct:{user_id}:%", f"direct:%:{user_id}"),
        )

        peers = [_direct_peer(row["room"], user_id) for row in direct_rows]
        names = _user_names(db, peers)

        chats = [
            {"room": group_room(group["id"]), "type": "group", "id": group["id"], "name": group["name"]}
            for group in groups
        ]
        chats.extend(
            {"room": direct_room(user_id, peer), "type": "direct", "id": peer, "name": names.get(peer)}
            for peer in peers
        )
        return jsonify(chats)

    @app.post("/api/chats/typing")
    @require_login
    def notify_typing():
        payload = check_fields(
            request.get_json(force=True, silent=True),
            required=("room",),
            optional=("typing",),
        )
        room = str(payload["room"])
        if not _may_join_room(db, session["user_id"], room):
            return jsonify({"error": "not_authorized"}), 403

        typing = payload.get("typing", True)
        if not isinstance(typing, bool):
            raise InvalidPayload("typing", code="invalid_field")

        hub.publish(
            room,
            {
                "event": "typing" if typing else "stop_typing",
                "room": room,
                "user": {"id": session["user_id"], "name": session.get("user_name")},
            },
        )
        return jsonify({"status": "ok"})

    @app.get("/api/chats/group/<int:group_id>")
    @require_login
    def get_group_chat(group_id: int):
        if not _user_in_group(db, session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403
        room = group_room(group_id)
        return jsonify({"room": room, "messages": _load_messages(db, room)})

    @app.post("/api/chats/group/<int:group_id>/messages")
    @require_login
    def send_group_message(group_id: int):
        payload = check_fields(request.get_json(force=True, silent=True), required=("content",))
        if not _user_in_group(db, session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403
        message = _post_message(db, hub, group_room(group_id), str(payload["content"]))
        return jsonify(message), 201

    @app.get("/api/chats/direct/<int:user_id>")
    @require_login
    def get_direct_chat(user_id: int):
        if user_id == session["user_id"]:
            return jsonify({"error": "cannot_message_self"}), 400
        if not _existing_user_ids(db, [user_id]):
            return jsonify({"error": "user_not_found"}), 404
        room = direct_room(session["user_id"], user_id)
        return jsonify({"room": room, "messages": _load_messages(db, room)})

    @app.post("/api/chats/direct/<int:user_id>/messages")
    @require_login
    def send_direct_message(user_id: int):
        payload = check_fields(request.get_json(force=True, silent=True), required=("content",))
        if user_id == session["user_id"]:
            return jsonify({"error": "cannot_message_self"}), 400
        if not _existing_user_ids(db, [user_id]):
            return jsonify({"error": "user_not_found"}), 404
        message = _post_message(db, hub, direct_room(session["user_id"], user_id), str(payload["content"]))
        return jsonify(message), 201

    @app.get("/api/chats/stream")
    @require_login
    def stream_chat():
        room = request.args.get("room") or ""
        if not _may_join_room(db, session["user_id"], room):
            return jsonify({"error": "not_authorized"}), 403

        subscription = hub.subscribe(room)

        def events():
            with subscription:
                while True:
                    message = subscription.get(timeout=STREAM_KEEPALIVE_SECONDS)
                    if message is None:
                        yield ": keep-alive\n\n"
                        continue
                    yield _sse_frame(message)

        return Response(stream_with_context(events()), mimetype="text/event-stream")


# ----------------------------------------------------------------------------
# helpers
# ----------------------------------------------------------------------------


def _user_in_group(db: Database, user_id: int, group_id: Optional[int]) -> bool:
    if group_id is None:
        return False
    record = db.fetch_one(
        "SELECT id FROM group_members WHERE group_id=%s AND user_id=%s",
        (group_id, user_id),
    )
    return record is not None


def _existing_user_ids(db: Database, user_ids: List[int]) -> set:
    if not user_ids:
        return set()
    placeholders = ", ".join(["%s"] * len(user_ids))
    rows = db.fetch_all(f"SELECT id FROM users WHERE id IN ({placeholders})", list(user_ids))
    return {row["id"] for row in rows}


def _member_rows(db: Database, group_id: int) -> List[Dict[str, Any]]:
    return db.fetch_all(
        """
        SELECT u.id, u.name, u.email, gm.is_admin
        FROM group_members gm
        JOIN users u ON gm.user_id = u.id
        WHERE gm.group_id=%s
        ORDER BY gm.id
        """,
        (group_id,),
    )


def _load_group(db: Database, group_id: int) -> Optional[Group]:
    row = db.fetch_one(
        "SELECT id, name, description, created_by FROM `groups` WHERE id=%s",
        (group_id,),
    )
    if not row:
        return None
    member_rows = db.fetch_all(
        "SELECT user_id, is_admin FROM group_members WHERE group_id=%s ORDER BY id",
        (group_id,),
    )
    return Group.from_rows(row, member_rows)


def _group_payload(db: Database, group_id: int) -> Dict[str, Any]:
    group = _load_group(db, group_id)
    members = _member_rows(db, group_id)
    return {
        "id": group_id,
        "name": group.name,
        "description": group.description,
        "created_by": group.created_by,
        "members": [
            {
                "id": member["id"],
                "name": member["name"],
                "email": member["email"],
                "is_admin": bool(member["is_admin"]),
            }
            for member in members
        ],
    }


def _has_ledger_entries(db: Database, group_id: int, user_id: int) -> bool:
    row = db.fetch_one(
        """
        SELECT
            (SELECT COUNT(*) FROM expenses WHERE group_id=%s AND paid_by=%s)
          + (SELECT COUNT(*) FROM expense_splits es JOIN expenses e ON es.expense_id = e.id
             WHERE e.group_id=%s AND es.user_id=%s)
          + (SELECT COUNT(*) FROM settlements
             WHERE group_id=%s AND status IN ('pending', 'completed')
               AND (payer_id=%s OR receiver_id=%s))
          AS entries
        """,
        (group_id, user_id, group_id, user_id, group_id, user_id, user_id),
    )
    return bool(row and row["entries"])


def _load_expenses(db: Database, where: str, params: Tuple[Any, ...]) -> List[Expense]:
    rows = db.fetch_all(
        f"""
        SELECT id, group_id, description, amount, paid_by, category, notes, receipt, expense_date
        FROM expenses
        WHERE {where}
        ORDER BY expense_date DESC, id DESC
        """,
        params,
    )
    if not rows:
        return []

    expense_ids = [row["id"] for row in rows]
    placeholders = ", ".join(["%s"] * len(expense_ids))
    split_rows = db.fetch_all(
        f"""
        SELECT expense_id, user_id, amount, settled
        FROM expense_splits
        WHERE expense_id IN ({placeholders})
        ORDER BY expense_id, position
        """,
        expense_ids,
    )
    splits_map: Dict[int, List[Split]] = {}
    for split in split_rows:
        splits_map.setdefault(split["expense_id"], []).append(
            Split(split["user_id"], to_decimal(split["amount"]), bool(split["settled"]))
        )

    return [
        Expense(
            id=row["id"],
            description=row["description"],
            amount=to_decimal(row["amount"]),
            payer=row["paid_by"],
            splits=tuple(splits_map.get(row["id"], ())),
            date=row["expense_date"],
            category=row["category"],
            notes=row["notes"],
            group=row["group_id"],
            receipt=row["receipt"],
        )
        for row in rows
    ]


def _find_expense(db: Database, expense_id: int) -> Optional[Expense]:
    expenses = _load_expenses(db, "id=%s", (expense_id,))
    return expenses[0] if expenses else None


def _expense_payload(expense: Expense, names: Dict[int, str]) -> Dict[str, Any]:
    payload = expense.to_dict()
    payload["paid_by_name"] = names.get(expense.payer)
    for split in payload["splits"]:
        split["name"] = names.get(split["user"])
    return payload


def _insert_splits(tx, expense_id: int, splits: Iterable[Split]) -> None:
    for position, split in enumerate(splits):
        tx.execute(
            """
            INSERT INTO expense_splits (expense_id, user_id, amount, settled, position)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (expense_id, split.user, str(split.amount), split.settled, position),
        )


def _load_settlements(db: Database, where: str, params: Tuple[Any, ...]) -> List[Settlement]:
    rows = db.fetch_all(
        f"""
        SELECT s.id, s.payer_id, s.receiver_id, s.amount, s.group_id, s.notes, s.status
        FROM settlements s
        WHERE {where}
        ORDER BY s.created_at DESC, s.id DESC
        """,
        params,
    )
    if not rows:
        return []

    settlement_ids = [row["id"] for row in rows]
    placeholders = ", ".join(["%s"] * len(settlement_ids))
    linked_rows = db.fetch_all(
        f"""
        SELECT settlement_id, expense_id, amount
        FROM settlement_expenses
        WHERE settlement_id IN ({placeholders})
        ORDER BY id
        """,
        settlement_ids,
    )
    linked_map: Dict[int, List[LinkedExpense]] = {}
    for linked in linked_rows:
        linked_map.setdefault(linked["settlement_id"], []).append(
            LinkedExpense(linked["expense_id"], to_decimal(linked["amount"]))
        )

    return [
        Settlement(
            id=row["id"],
            payer=row["payer_id"],
            receiver=row["receiver_id"],
            amount=to_decimal(row["amount"]),
            group=row["group_id"],
            linked_expenses=tuple(linked_map.get(row["id"], ())),
            status=SettlementStatus.parse(row["status"]),
            notes=row["notes"],
        )
        for row in rows
    ]


def _find_settlement(db: Database, settlement_id: int) -> Optional[Settlement]:
    settlements = _load_settlements(db, "s.id=%s", (settlement_id,))
    return settlements[0] if settlements else None


def _load_messages(db: Database, room: str) -> List[Dict[str, Any]]:
    rows = db.fetch_all(
        """
        SELECT m.id, m.room, m.sender_id, u.name AS sender_name, m.content, m.created_at
        FROM chat_messages m
        JOIN users u ON m.sender_id = u.id
        WHERE m.room=%s
        ORDER BY m.created_at, m.id
        """,
        (room,),
    )
    return [_message_payload(row) for row in rows]


def _post_message(db: Database, hub: ChatHub, room: str, content: str) -> Dict[str, Any]:
    content = content.strip()
    if not content:
        raise InvalidPayload("content", code="missing_fields")

    created_at = datetime.now(timezone.utc).replace(tzinfo=None)
    message_id = db.execute(
        "INSERT INTO chat_messages (room, sender_id, content, created_at) VALUES (%s, %s, %s, %s)",
        (room, session["user_id"], content, created_at),
    )
    message = _message_payload(
        {
            "id": message_id,
            "room": room,
            "sender_id": session["user_id"],
            "sender_name": session.get("user_name"),
            "content": content,
            "created_at": created_at,
        }
    )
    hub.publish(room, message)
    return message


def _message_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    created_at = row["created_at"]
    return {
        "id": row["id"],
        "room": row["room"],
        "sender": {"id": row["sender_id"], "name": row["sender_name"]},
        "content": row["content"],
        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
    }


def _sse_frame(message: Dict[str, Any]) -> str:
    # typing notices carry an event name; chat messages use the default one
    event = message.get("event")
    data = f"data: {json.dumps(message)}\n\n"
    return f"event: {event}\n{data}" if event else data


def _direct_peer(room: str, user_id: int) -> int:
    low, high = (int(part) for part in room.split(":")[1:3])
    return high if low == user_id else low


def _user_names(db: Database, user_ids: List[int]) -> Dict[int, str]:
    if not user_ids:
        return {}
    placeholders = ", ".join(["%s"] * len(user_ids))
    rows = db.fetch_all(f"SELECT id, name FROM users WHERE id IN ({placeholders})", list(user_ids))
    return {row["id"]: row["name"] for row in rows}


def _may_join_room(db: Database, user_id: int, room: str) -> bool:
    kind, _, rest = room.partition(":")
    try:
        if kind == "group":
            return _user_in_group(db, user_id, int(rest))
        if kind == "direct":
            low, _, high = rest.partition(":")
            return user_id in (int(low), int(high))
    except ValueError:
        return False
    return False


def _parse_id(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise InvalidPayload(field, code="invalid_field")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPayload(field, code="invalid_field") from None


def _parse_ids(values: Any, field: str) -> List[int]:
    if not isinstance(values, list):
        raise InvalidPayload(field, code="invalid_field")
    return [_parse_id(value, field) for value in values]


def _parse_date(value: Any) -> date:
    if value in (None, ""):
        return date.today()
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidPayload("date", code="invalid_field") from None


def _parse_split_entries(payload: Any) -> List[Tuple[int, Any]]:
    if not isinstance(payload, list):
        raise InvalidPayload("splits", code="invalid_field")
    entries = []
    for item in payload:
        item = check_fields(item, required=("user_id",), optional=("value",))
        entries.append((_parse_id(item["user_id"], "user_id"), item.get("value")))
    return entries


def _parse_linked_expenses(payload: Any) -> List[LinkedExpense]:
    if not isinstance(payload, list):
        raise InvalidPayload("expenses", code="invalid_field")
    linked = []
    for item in payload:
        item = check_fields(item, required=("expense_id", "amount"))
        linked.append(LinkedExpense(_parse_id(item["expense_id"], "expense_id"), to_decimal(item["amount"])))
    return linked

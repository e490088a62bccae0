from __future__ import annotations

from flask import current_app, g, jsonify, request
from flask_login import login_user, logout_user
from sqlalchemy import func

from app.api import api_bp
from app.extensions import db
from app.models import (
    AI_STATUSES,
    TAG_TYPE_USER,
    Bookmark,
    Tag,
    User,
)
from app.services import storage
from app.services.ai_processor import (
    get_ai_processor,
    reprocess_bookmarks,
    retry_failed,
    start_background_drain,
)
from app.services.content import extract_text_from_html
from app.services.prompts import (
    DEFAULT_PROMPTS,
    SUMMARY_PROMPT_KEY,
    TAGGING_PROMPT_KEY,
    get_prompt_or_default,
)
from app.services.security import (
    api_auth_required,
    bearer_token_from_request,
    issue_api_token,
    revoke_api_token,
)
from app.services.tag_migration import TagMigrationError, migrate_tag_vocabulary
from app.services.tag_normalizer import process_ai_tags

PROMPT_KEYS = (SUMMARY_PROMPT_KEY, TAGGING_PROMPT_KEY)


def _to_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _tag_names_from_payload(tags_input) -> list[str]:
    if isinstance(tags_input, str):
        tags_input = tags_input.split(",")
    if not isinstance(tags_input, list):
        return []
    return process_ai_tags([item for item in tags_input if isinstance(item, str)])


def _assign_user_tags(bookmark: Bookmark, names: list[str]) -> list[Tag]:
    tags = []
    for name in names:
        tag = storage.get_or_create_tag(name, TAG_TYPE_USER)
        storage.add_bookmark_tag(bookmark.id, tag.id)
        tags.append(tag)
    return tags


def _get_user_bookmark_or_404(user_id: int, bookmark_id: int):
    bookmark = Bookmark.query.filter_by(id=bookmark_id, user_id=user_id).first()
    if not bookmark:
        return None, (jsonify({"error": "bookmark not found"}), 404)
    return bookmark, None


def _ai_state(bookmark: Bookmark) -> dict:
    return {
        "id": bookmark.id,
        "ai_processing_status": bookmark.ai_processing_status,
        "insight": bookmark.insight.as_dict() if bookmark.insight else None,
        "tags": [tag.as_dict() for tag in bookmark.tags],
    }


def _start_drain(user_id: int) -> None:
    start_background_drain(current_app._get_current_object(), user_id)


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "Bookmind"})


@api_bp.route("/auth/bootstrap-admin", methods=["POST"])
def bootstrap_admin_api():
    if User.query.count() > 0:
        return jsonify({"error": "bootstrap already completed"}), 409

    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        return jsonify({"error": "username and password are required"}), 400

    admin = User(username=username, is_admin=True, is_active=True)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()
    return jsonify({"status": "created", "user_id": admin.id}), 201


def _user_from_credentials(payload: dict):
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    user = User.query.filter_by(username=username).first()
    if not user or not user.is_active or not user.check_password(password):
        return None
    return user


@api_bp.route("/auth/token", methods=["POST"])
def create_token_with_credentials():
    payload = request.get_json(silent=True) or {}
    token_name = (payload.get("token_name") or "Bookmind API Token").strip()
    user = _user_from_credentials(payload)
    if not user:
        return jsonify({"error": "invalid credentials"}), 401

    token = issue_api_token(user, token_name)
    return jsonify({"token": token, "token_name": token_name, "user_id": user.id})


@api_bp.route("/auth/token", methods=["DELETE"])
@api_auth_required(token_only=True)
def revoke_current_token():
    revoke_api_token(bearer_token_from_request())
    return jsonify({"status": "revoked"})


@api_bp.route("/auth/login", methods=["POST"])
def session_login():
    user = _user_from_credentials(request.get_json(silent=True) or {})
    if not user:
        return jsonify({"error": "invalid credentials"}), 401
    login_user(user)
    return jsonify({"status": "logged_in", "user_id": user.id})


@api_bp.route("/auth/logout", methods=["POST"])
def session_logout():
    logout_user()
    return jsonify({"status": "logged_out"})


@api_bp.route("/bookmarks", methods=["GET"])
@api_auth_required()
def bookmarks_list_api():
    user = g.api_user
    query = Bookmark.query.filter_by(user_id=user.id)
    status = (request.args.get("ai_status") or "").strip().lower()
    if status:
        if status not in AI_STATUSES:
            return jsonify({"error": "invalid ai_status"}), 400
        query = query.filter_by(ai_processing_status=status)
    items = query.order_by(Bookmark.updated_at.desc()).all()
    return jsonify({"items": [item.as_dict() for item in items]})


@api_bp.route("/bookmarks", methods=["POST"])
@api_auth_required()
def bookmarks_create_api():
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    url = (payload.get("url") or "").strip()
    if not url:
        return jsonify({"error": "url is required"}), 400

    content_html = payload.get("content_html") or None
    title = (payload.get("title") or "").strip() or None
    if not title and content_html:
        title, _text = extract_text_from_html(content_html)

    bookmark = Bookmark(
        user_id=user.id,
        url=url,
        title=title,
        content_html=content_html,
    )
    db.session.add(bookmark)
    db.session.flush()
    _assign_user_tags(bookmark, _tag_names_from_payload(payload.get("tags")))
    db.session.commit()

    if _to_bool(payload.get("process_now"), default=False):
        _start_drain(user.id)
    return jsonify(bookmark.as_dict(include_insight=True)), 201


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["GET"])
@api_auth_required()
def bookmarks_get_api(bookmark_id: int):
    user = g.api_user
    bookmark, error = _get_user_bookmark_or_404(user.id, bookmark_id)
    if error:
        return error
    return jsonify(bookmark.as_dict(include_insight=True))


@api_bp.route("/bookmarks/<int:bookmark_id>/ai", methods=["GET"])
@api_auth_required()
def bookmark_ai_state(bookmark_id: int):
    user = g.api_user
    bookmark, error = _get_user_bookmark_or_404(user.id, bookmark_id)
    if error:
        return error
    return jsonify(_ai_state(bookmark))


@api_bp.route("/bookmarks/<int:bookmark_id>/reprocess", methods=["POST"])
@api_auth_required()
def bookmark_reprocess(bookmark_id: int):
    user = g.api_user
    bookmark, error = _get_user_bookmark_or_404(user.id, bookmark_id)
    if error:
        return error
    if not reprocess_bookmarks([bookmark.id], user_id=user.id):
        return (
            jsonify(
                {
                    "error": "bookmark is already queued for AI processing",
                    "ai_processing_status": bookmark.ai_processing_status,
                }
            ),
            409,
        )
    _start_drain(user.id)
    return jsonify({"status": "queued", "bookmark_id": bookmark.id}), 202


@api_bp.route("/ai/process", methods=["POST"])
@api_auth_required()
def ai_process():
    user = g.api_user
    _start_drain(user.id)
    return jsonify({"status": "started"}), 202


@api_bp.route("/ai/retry-failed", methods=["POST"])
@api_auth_required()
def ai_retry_failed():
    user = g.api_user
    count = retry_failed(user_id=user.id)
    if count:
        _start_drain(user.id)
    return jsonify({"status": "queued" if count else "idle", "reset": count}), 202


@api_bp.route("/ai/status", methods=["GET"])
@api_auth_required()
def ai_status():
    user = g.api_user
    rows = (
        db.session.query(Bookmark.ai_processing_status, func.count(Bookmark.id))
        .filter(Bookmark.user_id == user.id)
        .group_by(Bookmark.ai_processing_status)
        .all()
    )
    counts = {status: 0 for status in AI_STATUSES}
    counts.update({status: count for status, count in rows})
    processor = get_ai_processor(current_app)
    return jsonify(
        {
            "counts": counts,
            "draining": processor.is_draining,
            "active_tasks": processor.active_tasks,
            "peak_active_tasks": processor.peak_active_tasks,
        }
    )


@api_bp.route("/tags", methods=["GET"])
@api_auth_required()
def tags_list():
    tags = Tag.query.order_by(Tag.name.asc()).all()
    return jsonify({"items": [tag.as_dict() for tag in tags]})


@api_bp.route("/bookmarks/<int:bookmark_id>/tags", methods=["POST"])
@api_auth_required()
def bookmark_tags_add(bookmark_id: int):
    user = g.api_user
    bookmark, error = _get_user_bookmark_or_404(user.id, bookmark_id)
    if error:
        return error
    payload = request.get_json(silent=True) or {}
    names = _tag_names_from_payload(payload.get("tags"))
    if not names:
        return jsonify({"error": "at least one valid tag is required"}), 400
    _assign_user_tags(bookmark, names)
    db.session.commit()
    return jsonify({"tags": [tag.as_dict() for tag in bookmark.tags]})


@api_bp.route("/bookmarks/<int:bookmark_id>/tags/<int:tag_id>", methods=["DELETE"])
@api_auth_required()
def bookmark_tags_remove(bookmark_id: int, tag_id: int):
    user = g.api_user
    bookmark, error = _get_user_bookmark_or_404(user.id, bookmark_id)
    if error:
        return error
    if not storage.remove_bookmark_tag(bookmark.id, tag_id):
        return jsonify({"error": "tag not found on bookmark"}), 404
    db.session.commit()
    return jsonify({"tags": [tag.as_dict() for tag in bookmark.tags]})


@api_bp.route("/settings/prompts", methods=["GET"])
@api_auth_required(admin=True)
def prompts_get():
    return jsonify(
        {
            key: {
                "value": get_prompt_or_default(key),
                "default": DEFAULT_PROMPTS[key],
            }
            for key in PROMPT_KEYS
        }
    )


@api_bp.route("/settings/prompts", methods=["PUT"])
@api_auth_required(admin=True)
def prompts_update():
    payload = request.get_json(silent=True) or {}
    updates = {key: payload[key] for key in PROMPT_KEYS if key in payload}
    if not updates:
        return jsonify({"error": "no prompt keys supplied"}), 400
    for key, value in updates.items():
        if value is not None and not isinstance(value, str):
            return jsonify({"error": f"{key} must be a string"}), 400
        # An empty value falls back to the built-in prompt.
        storage.set_setting(key, (value or "").strip() or None)
    db.session.commit()
    return jsonify({key: get_prompt_or_default(key) for key in PROMPT_KEYS})


@api_bp.route("/admin/tags/normalize", methods=["POST"])
@api_auth_required(admin=True)
def admin_normalize_tags():
    payload = request.get_json(silent=True) or {}
    dry_run = _to_bool(payload.get("dry_run"), default=False)
    try:
        plan = migrate_tag_vocabulary(dry_run=dry_run)
    except TagMigrationError as exc:
        return jsonify({"error": f"tag migration rolled back: {exc}"}), 500
    return jsonify(plan.as_dict())

import json
import os
import secrets
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from functools import wraps
from pathlib import Path

from flask import Flask, jsonify, make_response, redirect, request, send_file, send_from_directory
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from marketplace import (
    DEFAULT_DELIVERY_EMAIL_PATTERN,
    EMAIL_PATTERN,
    DuplicatePendingPurchase,
    Forbidden,
    IdentityUnresolved,
    InvalidArgument,
    MarketplaceError,
    NotFound,
    ProjectNotFound,
    add_comment,
    comments_query,
    create_purchase,
    list_purchases,
    mark_all_comments_read,
    project_slug,
    purge_expired_views,
    rating_summary,
    record_view,
    resolve_project,
    resolve_user_id,
    review_purchase,
    set_comment_read,
    text_value,
    update_delivery_email,
    upsert_review,
    view_count,
)
from models import (
    PROJECT_TYPES,
    ROLES,
    AuditLog,
    Comment,
    ErrorLog,
    LoginAttempt,
    Project,
    Purchase,
    Review,
    Session,
    User,
    View,
    as_utc,
    db,
    isoformat,
    utcnow,
)
from storage import CATEGORIES, PUBLIC_CATEGORIES, LocalObjectStore


GENERIC_ERROR = "Something went wrong. Please try again later."


def create_app(test_config=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///marketplace.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.config["SESSION_IDLE_MINUTES"] = int(os.getenv("SESSION_IDLE_MINUTES", "60"))
    app.config["SESSION_COOKIE_SECURE"] = os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true"
    app.config["LOGIN_RATE_LIMIT_WINDOW_MINUTES"] = int(os.getenv("LOGIN_RATE_LIMIT_WINDOW_MINUTES", "15"))
    app.config["LOGIN_RATE_LIMIT_MAX_ATTEMPTS"] = int(os.getenv("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", "5"))
    app.config["DELIVERY_EMAIL_PATTERN"] = os.getenv("DELIVERY_EMAIL_PATTERN", DEFAULT_DELIVERY_EMAIL_PATTERN)
    app.config["VIEW_TTL_DAYS"] = int(os.getenv("VIEW_TTL_DAYS", "30"))
    app.config["DOWNLOAD_TOKEN_TTL_SECONDS"] = int(os.getenv("DOWNLOAD_TOKEN_TTL_SECONDS", "300"))
    app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))
    app.config["ADMIN_EMAIL"] = os.getenv("ADMIN_EMAIL")
    app.config["ADMIN_PASSWORD"] = os.getenv("ADMIN_PASSWORD")

    project_root = Path(__file__).resolve().parent
    app.config["UPLOAD_ROOT"] = os.getenv("UPLOAD_ROOT", str(project_root / "uploads"))

    if test_config:
        app.config.update(test_config)

    store = LocalObjectStore(app.config["UPLOAD_ROOT"])
    app.extensions["object_store"] = store

    db.init_app(app)

    with app.app_context():
        db.create_all()
        ensure_admin_account(app)

    serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt="project-download")

    def get_client_ip():
        forwarded = request.headers.get("X-Forwarded-For")
        return forwarded.split(",")[0].strip() if forwarded else (request.remote_addr or "unknown")

    def log_admin_action(admin_id, action):
        db.session.add(
            AuditLog(
                admin_user_id=admin_id,
                action=action,
                ip_address=get_client_ip(),
                device_info=request.user_agent.string if request.user_agent else None,
            )
        )
        db.session.commit()

    def log_error(source, message, severity="error"):
        db.session.rollback()
        try:
            db.session.add(ErrorLog(source=source, severity=severity, message=message))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.exception("Could not persist error log entry from %s", source)

    def token_expiry(minutes):
        return utcnow() + timedelta(minutes=minutes)

    def issue_session(user):
        token = secrets.token_urlsafe(48)
        session = Session(
            user_id=user.id,
            email=user.email,
            session_token=token,
            expires_at=token_expiry(app.config["SESSION_IDLE_MINUTES"]),
            device_info=request.user_agent.string,
            ip_address=get_client_ip(),
            last_activity_at=utcnow(),
        )
        db.session.add(session)
        db.session.commit()
        return token

    def login_blocked(email):
        window_start = utcnow() - timedelta(minutes=app.config["LOGIN_RATE_LIMIT_WINDOW_MINUTES"])
        attempts = LoginAttempt.query.filter(
            LoginAttempt.successful.is_(False),
            LoginAttempt.attempted_at >= window_start,
            (LoginAttempt.email == email) | (LoginAttempt.ip_address == get_client_ip()),
        ).count()
        return attempts >= app.config["LOGIN_RATE_LIMIT_MAX_ATTEMPTS"]

    def record_login_attempt(email, success):
        db.session.add(LoginAttempt(email=email, ip_address=get_client_ip(), successful=success))
        db.session.commit()

    def get_session_from_cookie():
        raw = request.cookies.get("session_token")
        if not raw:
            return None
        session = Session.query.filter_by(session_token=raw).first()
        if not session:
            return None
        if as_utc(session.expires_at) < utcnow():
            db.session.delete(session)
            db.session.commit()
            return None
        session.last_activity_at = utcnow()
        session.expires_at = token_expiry(app.config["SESSION_IDLE_MINUTES"])
        db.session.commit()
        return session

    def get_optional_user():
        active_session = get_session_from_cookie()
        if not active_session:
            return None
        try:
            return db.session.get(User, resolve_user_id(active_session))
        except IdentityUnresolved:
            return None

    def require_auth(role=None):
        def decorator(fn):
            @wraps(fn)
            def wrapped(*args, **kwargs):
                active_session = get_session_from_cookie()
                if not active_session:
                    return jsonify({"error": "Authentication required"}), 401
                user = db.session.get(User, resolve_user_id(active_session))
                if role and user.role != role:
                    return jsonify({"error": "Admin access required" if role == "admin" else "Forbidden"}), 403
                request.current_user = user
                request.current_session = active_session
                return fn(*args, **kwargs)

            return wrapped

        return decorator

    def set_session_cookie(resp, token):
        resp.set_cookie(
            "session_token",
            token,
            httponly=True,
            secure=app.config["SESSION_COOKIE_SECURE"],
            samesite="Lax",
            max_age=app.config["SESSION_IDLE_MINUTES"] * 60,
        )
        return resp

    def as_data():
        payload = request.get_json(silent=True)
        # non-object JSON bodies carry no named fields
        return payload if isinstance(payload, dict) else request.form

    def text_field(data, key):
        return text_value(data.get(key), key)

    def password_field(data):
        password = data.get("password") or ""
        if not isinstance(password, str):
            raise InvalidArgument("password must be a string")
        return password

    def parse_int(value, field):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidArgument(f"{field} is required")

    def parse_bool(value, default=False):
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")

    def list_field(data, key):
        if hasattr(data, "getlist"):
            values = data.getlist(key)
            if len(values) != 1:
                return [v.strip() for v in values if v and v.strip()]
            raw = values[0]
        else:
            raw = data.get(key)
        if raw is None:
            return []
        if isinstance(raw, str):
            raw = raw.strip()
            if raw.startswith("["):
                try:
                    raw = json.loads(raw)
                except ValueError:
                    raise InvalidArgument(f"{key} must be a list")
            else:
                raw = raw.split(",")
        if not isinstance(raw, list):
            raise InvalidArgument(f"{key} must be a list")
        return [str(v).strip() for v in raw if str(v).strip()]

    def user_to_dict(user, include_email=True):
        if user is None:
            return None
        payload = {"id": user.id, "name": user.name}
        if include_email:
            payload["email"] = user.email
        return payload

    def project_to_dict(project):
        average_rating, review_count = rating_summary(project.id)
        return {
            "id": project.id,
            "title": project.title,
            "slug": project.slug,
            "description": project.description,
            "price": float(project.price),
            "images": list(project.images or []),
            "technologies": list(project.technologies or []),
            "features": list(project.features or []),
            "project_type": project.project_type,
            "demo_url": project.demo_url,
            "github_url": project.github_url,
            "has_project_file": bool(project.project_file),
            "payment_qr_code": project.payment_qr_code,
            "for_sale": project.for_sale,
            "average_rating": average_rating,
            "review_count": review_count,
            "view_count": view_count(project.id, app.config["VIEW_TTL_DAYS"]),
            "created_at": isoformat(project.created_at),
            "updated_at": isoformat(project.updated_at),
        }

    def purchase_to_dict(purchase):
        project = purchase.project
        return {
            "id": purchase.id,
            "project": {
                "id": project.id,
                "title": project.title,
                "slug": project.slug,
                "images": list(project.images or []),
                "price": float(project.price),
            }
            if project
            else None,
            "user": user_to_dict(purchase.user),
            "status": purchase.status,
            "payment_proof": purchase.payment_proof,
            "delivery_email": purchase.delivery_email,
            "feedback": purchase.feedback,
            "reviewed_by": user_to_dict(purchase.reviewer, include_email=False),
            "reviewed_at": isoformat(purchase.reviewed_at),
            "created_at": isoformat(purchase.created_at),
            "updated_at": isoformat(purchase.updated_at),
        }

    def review_to_dict(review, include_project=False):
        payload = {
            "id": review.id,
            "project_id": review.project_id,
            "user": user_to_dict(review.user),
            "rating": review.rating,
            "comment": review.comment,
            "created_at": isoformat(review.created_at),
            "updated_at": isoformat(review.updated_at),
        }
        if include_project and review.project:
            payload["project"] = {"id": review.project.id, "title": review.project.title}
        return payload

    def comment_to_dict(comment):
        return {
            "id": comment.id,
            "project_id": comment.project_id,
            "parent_id": comment.parent_id,
            "content": comment.content,
            "is_read": comment.is_read,
            "user": user_to_dict(comment.user, include_email=False) or {"id": None, "name": "Anonymous User"},
            "created_at": isoformat(comment.created_at),
        }

    def read_project_fields(data, project=None):
        """Validated column values from a create/update payload.

        With ``project`` given only the keys present in ``data`` are read.
        """
        partial = project is not None
        fields = {}

        def wanted(key):
            return not partial or key in data

        if wanted("title"):
            title = text_field(data, "title")
            if not title:
                raise InvalidArgument("Title is required")
            fields["title"] = title
        if wanted("description"):
            description = text_field(data, "description")
            if not description:
                raise InvalidArgument("Description is required")
            fields["description"] = description
        if wanted("price"):
            try:
                price = Decimal(str(data.get("price")))
            except (InvalidOperation, ValueError):
                raise InvalidArgument("Price is required")
            if not price.is_finite() or price < 0:
                raise InvalidArgument("Price cannot be negative")
            fields["price"] = price
        if wanted("project_type"):
            project_type = text_field(data, "project_type")
            if project_type not in PROJECT_TYPES:
                raise InvalidArgument("project_type must be one of " + ", ".join(PROJECT_TYPES))
            fields["project_type"] = project_type
        for key in ("technologies", "features"):
            if wanted(key):
                values = list_field(data, key)
                if not values:
                    raise InvalidArgument(f"At least one entry in {key} is required")
                fields[key] = values
        if "demo_url" in data:
            demo_url = text_field(data, "demo_url") or None
            if demo_url and not demo_url.startswith(("http://", "https://")):
                raise InvalidArgument("Demo URL must start with http:// or https://")
            fields["demo_url"] = demo_url
        if "github_url" in data:
            github_url = text_field(data, "github_url") or None
            if github_url and not github_url.startswith(("http://github.com/", "https://github.com/")):
                raise InvalidArgument("GitHub URL must be a valid GitHub repository URL")
            fields["github_url"] = github_url
        if "for_sale" in data or not partial:
            fields["for_sale"] = parse_bool(data.get("for_sale"), default=True)
        return fields

    # ----------------------------
    # Error handling
    # ----------------------------
    @app.errorhandler(DuplicatePendingPurchase)
    def handle_duplicate_purchase(err):
        return jsonify({"error": err.message, "purchase_id": err.purchase_id}), err.status_code

    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(err):
        if err.status_code >= 500:
            app.logger.error("%s on %s %s: %s", type(err).__name__, request.method, request.path, err.message)
            log_error(type(err).__name__, f"{request.method} {request.path}: {err.message}")
            return jsonify({"error": GENERIC_ERROR}), err.status_code
        return jsonify({"error": err.message}), err.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(err):
        if isinstance(err, HTTPException):
            return err
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        log_error("unhandled", f"{request.method} {request.path}: {type(err).__name__}: {err}")
        return jsonify({"error": GENERIC_ERROR}), 500

    @app.after_request
    def add_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    # ----------------------------
    # Auth
    # ----------------------------
    @app.post("/auth/signup")
    def signup():
        data = as_data()
        name = text_field(data, "name")
        email = text_field(data, "email").lower()
        password = password_field(data)
        if not name or not email or not password:
            return jsonify({"error": "Name, email, and password are required"}), 400
        if not EMAIL_PATTERN.match(email):
            return jsonify({"error": "Please enter a valid email"}), 400
        if len(password) < 6:
            return jsonify({"error": "Password must be at least 6 characters long"}), 400
        if User.query.filter_by(email=email).first():
            return jsonify({"error": "User with this email already exists"}), 409
        user = User(name=name, email=email, password_hash=generate_password_hash(password), role="user")
        db.session.add(user)
        db.session.commit()
        return jsonify({"message": "User registered", "user": user_to_dict(user)}), 201

    @app.post("/auth/login")
    def login():
        data = as_data()
        email = text_field(data, "email").lower()
        password = password_field(data)
        if not email or not password:
            return jsonify({"error": "Email and password required"}), 400
        if login_blocked(email):
            app.logger.warning("Login rate limited for %s from %s", email, get_client_ip())
            return jsonify({"error": "Too many login attempts. Try later."}), 429

        user = User.query.filter_by(email=email).first()
        if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
            record_login_attempt(email, False)
            return jsonify({"error": "Invalid credentials"}), 401

        token = issue_session(user)
        record_login_attempt(email, True)
        resp = make_response(jsonify({"message": "Logged in", "role": user.role}))
        return set_session_cookie(resp, token)

    @app.post("/auth/logout")
    @require_auth()
    def logout():
        db.session.delete(request.current_session)
        db.session.commit()
        resp = make_response(jsonify({"message": "Logged out"}))
        resp.delete_cookie("session_token")
        return resp

    @app.get("/auth/me")
    @require_auth()
    def me():
        user = request.current_user
        return jsonify({"id": user.id, "name": user.name, "email": user.email, "role": user.role})

    # ----------------------------
    # Users
    # ----------------------------
    @app.get("/users/profile")
    @require_auth()
    def get_profile():
        return jsonify({"user": user_to_dict(request.current_user)})

    @app.put("/users/profile")
    @require_auth()
    def update_profile():
        data = as_data()
        name = text_field(data, "name")
        email = text_field(data, "email").lower()
        if not name or not email:
            return jsonify({"error": "Name and email are required"}), 400
        if not EMAIL_PATTERN.match(email):
            return jsonify({"error": "Please enter a valid email"}), 400
        user = request.current_user
        if email != user.email and User.query.filter_by(email=email).first():
            return jsonify({"error": "Email already in use"}), 409
        user.name = name
        user.email = email
        request.current_session.email = email
        db.session.commit()
        return jsonify({"message": "Profile updated successfully", "user": user_to_dict(user)})

    @app.get("/admin/users")
    @require_auth(role="admin")
    def admin_list_users():
        users = User.query.order_by(User.created_at.desc(), User.id.desc()).all()
        return jsonify(
            [
                {
                    "id": u.id,
                    "name": u.name,
                    "email": u.email,
                    "role": u.role,
                    "has_password": bool(u.password_hash),
                    "created_at": isoformat(u.created_at),
                }
                for u in users
            ]
        )

    @app.patch("/admin/users/<int:user_id>")
    @require_auth(role="admin")
    def admin_update_user_role(user_id):
        role = text_field(as_data(), "role")
        if role not in ROLES:
            return jsonify({"error": 'Role must be either "user" or "admin"'}), 400
        user = db.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        user.role = role
        db.session.commit()
        log_admin_action(request.current_user.id, f"user_role:{user.id}:{role}")
        return jsonify({"message": "User role updated successfully", "user": {**user_to_dict(user), "role": user.role}})

    @app.delete("/admin/users/<int:user_id>")
    @require_auth(role="admin")
    def admin_delete_user(user_id):
        if user_id == request.current_user.id:
            return jsonify({"error": "Cannot delete your own account"}), 400
        user = db.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        Session.query.filter_by(user_id=user.id).delete()
        Purchase.query.filter_by(user_id=user.id).delete()
        Review.query.filter_by(user_id=user.id).delete()
        Comment.query.filter_by(user_id=user.id).update({"user_id": None})
        Purchase.query.filter_by(reviewed_by=user.id).update({"reviewed_by": None})
        db.session.delete(user)
        db.session.commit()
        log_admin_action(request.current_user.id, f"user_delete:{user_id}")
        return jsonify({"message": "User deleted successfully"})

    # ----------------------------
    # Projects
    # ----------------------------
    @app.get("/projects")
    def list_projects():
        query = Project.query
        if "for_sale" in request.args:
            query = query.filter(Project.for_sale.is_(parse_bool(request.args.get("for_sale"))))
        project_type = (request.args.get("project_type") or "").strip()
        if project_type:
            query = query.filter(Project.project_type == project_type)
        projects = query.order_by(Project.created_at.desc(), Project.id.desc()).all()
        return jsonify([project_to_dict(p) for p in projects])

    @app.get("/projects/<int:project_id>")
    def get_project(project_id):
        project = db.session.get(Project, project_id)
        if not project:
            raise ProjectNotFound()
        return jsonify(project_to_dict(project))

    @app.get("/projects/by-slug/<slug>")
    def get_project_by_slug(slug):
        project = Project.query.filter_by(slug=slug).first()
        if project:
            return jsonify(project_to_dict(project))
        if slug.isdigit():
            project = db.session.get(Project, int(slug))
            if project:
                return redirect(f"/projects/by-slug/{project.slug}", code=308)
        raise ProjectNotFound()

    @app.post("/admin/projects")
    @require_auth(role="admin")
    def create_project():
        data = as_data()
        fields = read_project_fields(data)
        images = list_field(data, "images")
        for image in request.files.getlist("image_files"):
            if image and image.filename:
                images.append(store.store(image, "images"))
        if not images:
            raise InvalidArgument("At least one image is required")

        project_file = request.files.get("project_file")
        qr_code_file = request.files.get("qr_code_file")
        project = Project(
            slug=project_slug(fields["title"]),
            images=images,
            project_file=store.store(project_file, "projects") if project_file and project_file.filename else None,
            payment_qr_code=store.store(qr_code_file, "qrcodes") if qr_code_file and qr_code_file.filename else None,
            **fields,
        )
        db.session.add(project)
        db.session.commit()
        log_admin_action(request.current_user.id, f"project_create:{project.id}")
        return jsonify(project_to_dict(project)), 201

    @app.patch("/admin/projects/<int:project_id>")
    @require_auth(role="admin")
    def update_project(project_id):
        project = db.session.get(Project, project_id)
        if not project:
            raise ProjectNotFound()
        data = as_data()
        fields = read_project_fields(data, project=project)

        if "title" in fields and fields["title"] != project.title:
            project.slug = project_slug(fields["title"], previous=project.slug, project_id=project.id)
        for key, value in fields.items():
            setattr(project, key, value)

        new_images = [store.store(f, "images") for f in request.files.getlist("image_files") if f and f.filename]
        if new_images:
            project.images = list(project.images or []) + new_images
        project_file = request.files.get("project_file")
        if project_file and project_file.filename:
            project.project_file = store.store(project_file, "projects")
        qr_code_file = request.files.get("qr_code_file")
        if qr_code_file and qr_code_file.filename:
            project.payment_qr_code = store.store(qr_code_file, "qrcodes")

        db.session.commit()
        log_admin_action(request.current_user.id, f"project_update:{project.id}")
        return jsonify(project_to_dict(project))

    @app.delete("/admin/projects/<int:project_id>")
    @require_auth(role="admin")
    def delete_project(project_id):
        project = db.session.get(Project, project_id)
        if not project:
            raise ProjectNotFound()
        for model in (Purchase, Review, Comment, View):
            model.query.filter_by(project_id=project.id).delete()
        db.session.delete(project)
        db.session.commit()
        log_admin_action(request.current_user.id, f"project_delete:{project_id}")
        return jsonify({"message": "Project deleted successfully"})

    # ----------------------------
    # Purchases
    # ----------------------------
    @app.post("/purchases")
    @require_auth()
    def submit_purchase():
        project_id = parse_int(request.form.get("project_id"), "project_id")
        purchase = create_purchase(
            project_id,
            request.current_user.id,
            request.files.get("payment_proof"),
            request.form.get("delivery_email"),
            store,
            app.config["DELIVERY_EMAIL_PATTERN"],
        )
        return jsonify({"message": "Purchase submitted successfully", "purchase": purchase_to_dict(purchase)}), 201

    @app.get("/purchases")
    @require_auth()
    def get_purchases():
        project_id = request.args.get("project_id")
        purchases = list_purchases(
            request.current_user,
            project_id=parse_int(project_id, "project_id") if project_id else None,
            status=(request.args.get("status") or "").strip() or None,
            scope=request.args.get("scope"),
        )
        return jsonify({"purchases": [purchase_to_dict(p) for p in purchases]})

    @app.patch("/purchases")
    @require_auth(role="admin")
    def decide_purchase():
        data = as_data()
        purchase_id = parse_int(data.get("id"), "id")
        status = text_field(data, "status")
        purchase = review_purchase(purchase_id, status, data.get("feedback"), request.current_user)
        log_admin_action(request.current_user.id, f"purchase_review:{purchase.id}:{status}")
        return jsonify({"message": f"Purchase {status} successfully", "purchase": purchase_to_dict(purchase)})

    @app.post("/admin/purchases/<int:purchase_id>/delivery-email")
    @require_auth(role="admin")
    def admin_update_delivery_email(purchase_id):
        purchase = update_delivery_email(
            purchase_id,
            as_data().get("delivery_email"),
            app.config["DELIVERY_EMAIL_PATTERN"],
        )
        log_admin_action(request.current_user.id, f"purchase_delivery_email:{purchase.id}")
        return jsonify({"message": "Delivery email updated successfully", "purchase": purchase_to_dict(purchase)})

    @app.get("/purchases/<int:purchase_id>/download-link")
    @require_auth()
    def purchase_download_link(purchase_id):
        purchase = db.session.get(Purchase, purchase_id)
        if not purchase or purchase.user_id != request.current_user.id:
            raise NotFound("Purchase not found")
        if purchase.status != "approved":
            raise InvalidArgument("Purchase has not been approved")
        if not purchase.project.project_file:
            raise NotFound("No downloadable file for this project")
        token = serializer.dumps({"uid": request.current_user.id, "purchase_id": purchase.id})
        return jsonify(
            {
                "download_url": f"/download/{token}",
                "expires_in_seconds": app.config["DOWNLOAD_TOKEN_TTL_SECONDS"],
            }
        )

    @app.get("/download/<token>")
    @require_auth()
    def download_project_file(token):
        try:
            payload = serializer.loads(token, max_age=app.config["DOWNLOAD_TOKEN_TTL_SECONDS"])
        except BadSignature:
            return jsonify({"error": "Invalid or expired download link"}), 400
        if payload.get("uid") != request.current_user.id:
            raise Forbidden()
        purchase = db.session.get(Purchase, payload.get("purchase_id"))
        if not purchase or purchase.status != "approved":
            raise NotFound("Purchase not found")
        path = store.resolve(purchase.project.project_file)
        if path is None:
            raise NotFound("Project file is missing")
        return send_file(path, as_attachment=True, download_name=f"{purchase.project.slug}{path.suffix}")

    # ----------------------------
    # Reviews
    # ----------------------------
    @app.get("/reviews")
    def list_reviews():
        project_id = parse_int(request.args.get("project_id"), "project_id")
        rows = Review.query.filter_by(project_id=project_id).order_by(Review.created_at.desc(), Review.id.desc()).all()
        return jsonify({"reviews": [review_to_dict(r) for r in rows]})

    @app.post("/reviews")
    @require_auth()
    def submit_review():
        data = as_data()
        project_id = parse_int(data.get("project_id"), "project_id")
        review, created = upsert_review(project_id, request.current_user.id, data.get("rating"), data.get("comment"))
        message = "Review submitted successfully" if created else "Review updated successfully"
        return jsonify({"message": message, "review": review_to_dict(review)}), 201 if created else 200

    @app.get("/admin/reviews")
    @require_auth(role="admin")
    def admin_list_reviews():
        query = Review.query
        rating = (request.args.get("rating") or "").strip()
        if rating and rating != "all":
            query = query.filter(Review.rating == parse_int(rating, "rating"))
        rows = query.order_by(Review.created_at.desc(), Review.id.desc()).all()
        return jsonify({"reviews": [review_to_dict(r, include_project=True) for r in rows]})

    @app.delete("/admin/reviews/<int:review_id>")
    @require_auth(role="admin")
    def admin_delete_review(review_id):
        review = db.session.get(Review, review_id)
        if not review:
            raise NotFound("Review not found")
        db.session.delete(review)
        db.session.commit()
        log_admin_action(request.current_user.id, f"review_delete:{review_id}")
        return jsonify({"message": "Review deleted successfully"})

    # ----------------------------
    # Views
    # ----------------------------
    @app.post("/views")
    def record_project_view():
        data = as_data()
        project_ref = data.get("project_id") or data.get("slug")
        device_id = str(data.get("device_id") or "").strip()
        if not project_ref or not device_id:
            return jsonify({"error": "project_id and device_id are required"}), 400
        try:
            outcome = record_view(project_ref, device_id[:255], app.config["VIEW_TTL_DAYS"])
        except Exception:
            # analytics never fail the page
            db.session.rollback()
            app.logger.exception("View recording failed for project %s", project_ref)
            outcome = "skipped"
        messages = {
            "recorded": "View recorded successfully",
            "duplicate": "View already recorded for this device",
            "skipped": "View not recorded",
        }
        return jsonify({"success": True, "counted": outcome == "recorded", "message": messages[outcome]})

    @app.get("/views")
    def get_view_count():
        project = resolve_project(request.args.get("project_id") or request.args.get("slug"))
        if project is None:
            raise ProjectNotFound()
        return jsonify({"project_id": project.id, "view_count": view_count(project.id, app.config["VIEW_TTL_DAYS"])})

    @app.post("/admin/maintenance/purge-views")
    @require_auth(role="admin")
    def admin_purge_views():
        removed = purge_expired_views(app.config["VIEW_TTL_DAYS"])
        log_admin_action(request.current_user.id, f"views_purge:{removed}")
        return jsonify({"expired_views_removed": removed, "ttl_days": app.config["VIEW_TTL_DAYS"]})

    # ----------------------------
    # Comments
    # ----------------------------
    @app.post("/comments")
    @require_auth()
    def post_comment():
        data = as_data()
        project_id = parse_int(data.get("project_id"), "project_id")
        parent_id = data.get("parent_id")
        comment = add_comment(
            project_id,
            request.current_user.id,
            data.get("content"),
            parse_int(parent_id, "parent_id") if parent_id not in (None, "") else None,
        )
        return jsonify({"comment": comment_to_dict(comment)}), 201

    @app.get("/comments")
    def list_comments():
        project_id = request.args.get("project_id")
        query = comments_query(
            project_id=parse_int(project_id, "project_id") if project_id else None,
            unread=parse_bool(request.args.get("unread")),
        )
        if parse_bool(request.args.get("count")):
            return jsonify({"count": query.count()})
        rows = query.order_by(Comment.created_at.desc(), Comment.id.desc()).all()
        return jsonify({"comments": [comment_to_dict(c) for c in rows]})

    @app.patch("/admin/comments")
    @require_auth(role="admin")
    def admin_update_comments():
        data = as_data()
        if parse_bool(data.get("mark_all_read")):
            updated = mark_all_comments_read()
            return jsonify({"message": f"Marked {updated} comments as read", "modified_count": updated})
        if "id" not in data or "is_read" not in data:
            return jsonify({"error": "Missing id or is_read field"}), 400
        comment = set_comment_read(parse_int(data.get("id"), "id"), parse_bool(data.get("is_read")))
        return jsonify({"message": "Comment updated successfully", "comment": comment_to_dict(comment)})

    # ----------------------------
    # Uploads
    # ----------------------------
    @app.get("/uploads/<category>/<filename>")
    def serve_upload(category, filename):
        if category not in CATEGORIES:
            raise NotFound()
        if category not in PUBLIC_CATEGORIES:
            user = get_optional_user()
            if not user or not user.is_admin:
                raise Forbidden()
        return send_from_directory(store.root / category, filename)

    return app


def ensure_admin_account(app):
    email = (app.config.get("ADMIN_EMAIL") or "").strip().lower()
    password = app.config.get("ADMIN_PASSWORD") or ""
    if not email or not password:
        return
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(name="Administrator", email=email, password_hash=generate_password_hash(password), role="admin")
        db.session.add(user)
        app.logger.info("Created admin account %s", email)
    elif user.role != "admin":
        user.role = "admin"
    db.session.commit()


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=True)

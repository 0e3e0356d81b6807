import re
from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import PURCHASE_STATUSES, Comment, Project, Purchase, Review, User, View, db, utcnow


SLUG_MAX_LENGTH = 100
REVIEW_COMMENT_MAX_LENGTH = 500
DEFAULT_DELIVERY_EMAIL_PATTERN = r"^[\w.-]+@gmail\.com$"
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
DECISIONS = ("approved", "rejected")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


class MarketplaceError(Exception):
    status_code = 500
    message = "Something went wrong. Please try again later."

    def __init__(self, message=None):
        self.message = message or self.message
        super().__init__(self.message)


class Unauthenticated(MarketplaceError):
    status_code = 401
    message = "Authentication required"


class Forbidden(MarketplaceError):
    status_code = 403
    message = "Forbidden"


class NotFound(MarketplaceError):
    status_code = 404
    message = "Not found"


class ProjectNotFound(NotFound):
    message = "Project not found"


class InvalidArgument(MarketplaceError):
    status_code = 400
    message = "Invalid request"


class PurchaseAlreadyReviewed(InvalidArgument):
    status_code = 409
    message = "This purchase has already been reviewed"


class DuplicatePendingPurchase(MarketplaceError):
    status_code = 409
    message = "You already have a pending purchase for this project"

    def __init__(self, purchase_id, message=None):
        super().__init__(message)
        self.purchase_id = purchase_id


class IdentityUnresolved(MarketplaceError):
    status_code = 401
    message = "User not found. Please log out and log back in."


class StorageFailure(MarketplaceError):
    status_code = 500


def text_value(value, field):
    """Stripped text of a request field; None and empty stay empty."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidArgument(f"{field} must be a string")
    return value.strip()


# --- slugs ---

def slugify(title):
    slug = _NON_ALNUM.sub("-", (title or "").lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def _slug_taken(slug, project_id=None):
    query = Project.query.filter(Project.slug == slug)
    if project_id is not None:
        query = query.filter(Project.id != project_id)
    return db.session.query(query.exists()).scalar()


def project_slug(title, previous=None, project_id=None):
    """Slug for ``title`` that no other project uses.

    A title that slugifies to nothing keeps ``previous``. Collisions get a
    numeric suffix: ``name``, ``name-1``, ``name-2`` ...
    """
    base = slugify(title)
    if not base:
        if previous:
            return previous
        base = "project"
    candidate = base
    counter = 1
    while _slug_taken(candidate, project_id):
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate


# --- identity ---

def resolve_user_id(session):
    """Turn an authenticated session into a user id.

    Order: the id carried by the session, then a user looked up by the
    session's email, then a minimal account created for that email.
    """
    if session is None:
        raise Unauthenticated()
    if session.user_id is not None and db.session.get(User, session.user_id) is not None:
        return session.user_id

    email = (session.email or "").strip().lower()
    if not email:
        raise IdentityUnresolved()

    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(name=email.split("@", 1)[0], email=email, role="user")
        db.session.add(user)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            user = User.query.filter_by(email=email).first()
            if user is None:
                raise IdentityUnresolved()
        else:
            current_app.logger.info("Created account %s for session email %s", user.id, email)

    session.user_id = user.id
    db.session.commit()
    return user.id


# --- purchases ---

def validate_delivery_email(email, pattern=DEFAULT_DELIVERY_EMAIL_PATTERN):
    email = text_value(email, "delivery_email")
    if not email or not re.fullmatch(pattern, email, flags=re.ASCII):
        raise InvalidArgument("A valid delivery email address is required")
    return email


def create_purchase(project_id, user_id, proof_file, delivery_email, store, email_pattern=DEFAULT_DELIVERY_EMAIL_PATTERN):
    delivery_email = validate_delivery_email(delivery_email, email_pattern)
    if proof_file is None or not getattr(proof_file, "filename", None):
        raise InvalidArgument("Payment proof is required")

    existing = Purchase.query.filter_by(project_id=project_id, user_id=user_id, status="pending").first()
    if existing:
        raise DuplicatePendingPurchase(existing.id)

    project = db.session.get(Project, project_id)
    if project is None:
        raise ProjectNotFound()
    if not project.for_sale:
        raise InvalidArgument("This project is not for sale")

    proof_url = store.store(proof_file, "payments")

    purchase = Purchase(
        project_id=project.id,
        user_id=user_id,
        status="pending",
        payment_proof=proof_url,
        delivery_email=delivery_email,
    )
    db.session.add(purchase)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.error(
            "Payment proof %s stored but purchase insert failed (project=%s user=%s)",
            proof_url,
            project_id,
            user_id,
        )
        existing = Purchase.query.filter_by(project_id=project_id, user_id=user_id, status="pending").first()
        if existing:
            raise DuplicatePendingPurchase(existing.id)
        raise

    current_app.logger.info("Purchase %s submitted for project %s by user %s", purchase.id, project.id, user_id)
    return purchase


def list_purchases(user, project_id=None, status=None, scope=None):
    """Purchases visible to ``user``.

    ``scope="all"`` lifts the owner filter, but only for admins; anyone
    else asking for it still gets their own purchases.
    """
    query = Purchase.query
    if not (scope == "all" and user.is_admin):
        query = query.filter(Purchase.user_id == user.id)
    if project_id is not None:
        query = query.filter(Purchase.project_id == project_id)
    if status:
        if status not in PURCHASE_STATUSES:
            raise InvalidArgument("status must be one of pending, approved, rejected")
        query = query.filter(Purchase.status == status)
    return query.order_by(Purchase.created_at.desc(), Purchase.id.desc()).all()


def review_purchase(purchase_id, status, feedback, admin):
    if admin is None or not admin.is_admin:
        raise Forbidden("Admin access required")
    if status not in DECISIONS:
        raise InvalidArgument("status must be approved or rejected")
    if feedback is not None and not text_value(feedback, "feedback"):
        feedback = None
    if status == "rejected" and feedback is None:
        raise InvalidArgument("Feedback is required when rejecting a purchase")

    now = utcnow()
    updated = (
        Purchase.query.filter_by(id=purchase_id, status="pending")
        .update(
            {
                "status": status,
                "feedback": feedback,
                "reviewed_by": admin.id,
                "reviewed_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        db.session.rollback()
        if db.session.get(Purchase, purchase_id) is None:
            raise NotFound("Purchase not found")
        raise PurchaseAlreadyReviewed()
    db.session.commit()

    purchase = db.session.get(Purchase, purchase_id)
    current_app.logger.info("Purchase %s %s by admin %s", purchase_id, status, admin.id)
    return purchase


def update_delivery_email(purchase_id, delivery_email, email_pattern=DEFAULT_DELIVERY_EMAIL_PATTERN):
    delivery_email = validate_delivery_email(delivery_email, email_pattern)
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFound("Purchase not found")
    purchase.delivery_email = delivery_email
    db.session.commit()
    return purchase


# --- reviews ---

def _parse_rating(value):
    if isinstance(value, bool):
        raise InvalidArgument("Rating must be an integer from 1 to 5.")
    if isinstance(value, float) and not value.is_integer():
        raise InvalidArgument("Rating must be an integer from 1 to 5.")
    try:
        rating = int(value)
    except (TypeError, ValueError):
        raise InvalidArgument("Rating must be an integer from 1 to 5.")
    if rating < 1 or rating > 5:
        raise InvalidArgument("Rating must be between 1 and 5.")
    return rating


def upsert_review(project_id, user_id, rating, comment):
    """Insert or overwrite the single review a user holds for a project.

    Returns ``(review, created)``.
    """
    rating = _parse_rating(rating)
    comment = text_value(comment, "comment")
    if not comment:
        raise InvalidArgument("Comment is required")
    if len(comment) > REVIEW_COMMENT_MAX_LENGTH:
        raise InvalidArgument(f"Comment cannot be more than {REVIEW_COMMENT_MAX_LENGTH} characters")
    if db.session.get(Project, project_id) is None:
        raise ProjectNotFound()

    review = Review.query.filter_by(project_id=project_id, user_id=user_id).first()
    created = review is None
    if created:
        review = Review(project_id=project_id, user_id=user_id, rating=rating, comment=comment)
        db.session.add(review)
        try:
            db.session.commit()
            return review, True
        except IntegrityError:
            # lost an insert race; the other writer's row gets overwritten below
            db.session.rollback()
            review = Review.query.filter_by(project_id=project_id, user_id=user_id).one()
            created = False

    review.rating = rating
    review.comment = comment
    db.session.commit()
    return review, created


def rating_summary(project_id):
    avg_rating, review_count = (
        db.session.query(func.avg(Review.rating), func.count(Review.id))
        .filter(Review.project_id == project_id)
        .first()
    )
    return (round(float(avg_rating), 2) if avg_rating is not None else None), int(review_count or 0)


# --- views ---

def resolve_project(project_ref):
    """Project by numeric id or slug, or None."""
    if project_ref is None:
        return None
    ref = str(project_ref).strip()
    if not ref:
        return None
    if ref.isdigit():
        project = db.session.get(Project, int(ref))
        if project is not None:
            return project
    return Project.query.filter_by(slug=ref).first()


def record_view(project_ref, device_id, ttl_days):
    """Count one view per (project, device) inside the rolling window.

    Returns "recorded", "duplicate" or "skipped" (unknown project).
    """
    project = resolve_project(project_ref)
    if project is None:
        return "skipped"

    cutoff = utcnow() - timedelta(days=ttl_days)
    View.query.filter(
        View.project_id == project.id,
        View.device_id == device_id,
        View.created_at < cutoff,
    ).delete(synchronize_session=False)
    db.session.add(View(project_id=project.id, device_id=device_id))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return "duplicate"
    return "recorded"


def view_count(project_id, ttl_days):
    cutoff = utcnow() - timedelta(days=ttl_days)
    return View.query.filter(View.project_id == project_id, View.created_at >= cutoff).count()


def purge_expired_views(ttl_days):
    cutoff = utcnow() - timedelta(days=ttl_days)
    removed = View.query.filter(View.created_at < cutoff).delete(synchronize_session=False)
    db.session.commit()
    return int(removed or 0)


# --- comments ---

def add_comment(project_id, user_id, content, parent_id=None):
    content = text_value(content, "content")
    if not content:
        raise InvalidArgument("Content is required")
    if db.session.get(Project, project_id) is None:
        raise ProjectNotFound()
    if parent_id is not None:
        parent = db.session.get(Comment, parent_id)
        if parent is None or parent.project_id != project_id:
            raise InvalidArgument("Parent comment not found on this project")
        if parent.parent_id is not None:
            raise InvalidArgument("Replies can only be one level deep")

    comment = Comment(project_id=project_id, user_id=user_id, parent_id=parent_id, content=content, is_read=False)
    db.session.add(comment)
    db.session.commit()
    return comment


def comments_query(project_id=None, unread=False):
    query = Comment.query
    if project_id is not None:
        query = query.filter(Comment.project_id == project_id)
    if unread:
        query = query.filter(Comment.is_read.is_(False))
    return query


def set_comment_read(comment_id, is_read):
    comment = db.session.get(Comment, comment_id)
    if comment is None:
        raise NotFound("Comment not found")
    comment.is_read = is_read
    db.session.commit()
    return comment


def mark_all_comments_read():
    updated = Comment.query.filter(Comment.is_read.is_(False)).update({"is_read": True}, synchronize_session=False)
    db.session.commit()
    return int(updated or 0)

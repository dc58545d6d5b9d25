import os
import time
import logging
import smtplib
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Path, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slugify import slugify

import database
import email_utils
from api_features import APIFeatures, parse_query_params
from auth import (
    RESET_FIELDS,
    check_password,
    create_password_reset_token,
    create_send_token,
    password_fields,
    protect,
    reset_token_conditions,
    restrict_to,
)
from database import SYSTEM_FIELDS, reviews, serialize, tours, users
from errors import AppError, install_error_handlers, is_development
from schemas import (
    REVIEW_FIELD_TYPES,
    TOUR_FIELD_TYPES,
    USER_FIELD_TYPES,
    ForgotPasswordRequest,
    LoginRequest,
    ResetPasswordRequest,
    Review,
    SignupRequest,
    Tour,
    TourUpdate,
    UpdateMeRequest,
    UpdatePasswordRequest,
    User,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("natours")

API = "/api/v1"

app = FastAPI(title="Natours API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)


@app.middleware("http")
async def request_timer(request: Request, call_next):
    request.state.request_time = datetime.utcnow().isoformat()
    start = time.perf_counter()
    response = await call_next(request)
    if is_development():
        logger.info(
            "%s %s %d %.1f ms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
    return response


@app.on_event("startup")
def ensure_indexes():
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a database")
        return
    database.db["tour"].create_index("name", unique=True)
    database.db["tour"].create_index("slug")
    database.db["user"].create_index("email", unique=True)
    database.db["review"].create_index("tour")


# ----------------------
# Utility functions
# ----------------------

def _object_ids(values: Optional[List[str]]) -> List[ObjectId]:
    return [ObjectId(v) for v in values or []]


def _tour_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(doc)
    if isinstance(out.get("duration"), (int, float)):
        out["duration_weeks"] = out["duration"] / 7
    return out


def _list_response(name: str, docs: List[Dict[str, Any]], out=serialize) -> Dict[str, Any]:
    return {"status": "success", "results": len(docs), "data": {name: [out(d) for d in docs]}}


def _run_features(repo, params: Dict[str, Any], field_types, conditions: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    features = (
        APIFeatures(repo.query(conditions), params, field_types)
        .filter()
        .sort()
        .limit_fields()
        .paginate()
    )
    return features.query.all()


# ----------------------
# Routes
# ----------------------

@app.get("/")
def root():
    return {"message": "Natours backend is running"}


@app.get("/test")
def test_database():
    db = database.db
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
        else:
            response["database"] = "❌ Not Available"
    except Exception as e:
        response["database"] = f"⚠️ Error: {str(e)[:80]}"
    return response


# ---- Tours ----

TOP_CHEAP_PRESET = {
    "limit": "5",
    "sort": "-ratings_average,price",
    "fields": "name,price,ratings_average,summary,difficulty,duration",
}


@app.get(f"{API}/tours/top-5-cheap")
def top_cheap_tours(request: Request):
    params = parse_query_params(request.query_params)
    params.update(TOP_CHEAP_PRESET)
    docs = _run_features(tours, params, TOUR_FIELD_TYPES)
    return _list_response("tours", docs, _tour_out)


@app.get(f"{API}/tours/stats")
def tour_stats():
    stats = tours.aggregate([
        {"$match": {"ratings_average": {"$gte": 4.6}}},
        {
            "$group": {
                "_id": {"$toUpper": "$difficulty"},
                "num_tours": {"$sum": 1},
                "num_ratings": {"$sum": "$ratings_quantity"},
                "avg_rating": {"$avg": "$ratings_average"},
                "avg_price": {"$avg": "$price"},
                "min_price": {"$min": "$price"},
                "max_price": {"$max": "$price"},
            }
        },
        {"$sort": {"avg_price": 1}},
    ])
    return {"status": "success", "data": {"stats": serialize(stats)}}


@app.get(f"{API}/tours/monthly-plan/{{year}}")
def monthly_plan(year: int = Path(..., ge=1, le=9998)):
    plan = tours.aggregate([
        {"$unwind": "$start_dates"},
        {
            "$match": {
                "start_dates": {
                    "$gte": datetime(year, 1, 1),
                    "$lt": datetime(year + 1, 1, 1),
                }
            }
        },
        {
            "$group": {
                "_id": {"$month": "$start_dates"},
                "num_tour_starts": {"$sum": 1},
                "tours": {"$push": "$name"},
            }
        },
        {"$addFields": {"month": "$_id"}},
        {"$project": {"_id": 0}},
        {"$sort": {"num_tour_starts": -1, "month": 1}},
        {"$limit": 12},
    ])
    return {"status": "success", "data": {"plan": plan}}


@app.get(f"{API}/tours")
def list_tours(request: Request):
    docs = _run_features(tours, parse_query_params(request.query_params), TOUR_FIELD_TYPES)
    return _list_response("tours", docs, _tour_out)


@app.post(f"{API}/tours", status_code=201)
def create_tour(req: Tour, user=Depends(restrict_to("admin", "lead-guide"))):
    doc = req.model_dump(exclude_none=True)
    doc["slug"] = slugify(req.name)
    doc["guides"] = _object_ids(req.guides)
    tour = tours.create(doc)
    logger.info("Tour %s created by %s", tour["_id"], user["_id"])
    return {"status": "success", "data": {"tour": _tour_out(tour)}}


@app.get(f"{API}/tours/{{tour_id}}")
def get_tour(tour_id: str):
    tour = tours.get(tour_id)
    if not tour:
        raise AppError("No tour found with that ID!", 404)
    out = _tour_out(tour)
    if tour.get("guides"):
        guides = (
            users.query({"_id": {"$in": tour["guides"]}})
            .select({"name": 1, "email": 1, "role": 1, "photo": 1})
            .all()
        )
        out["guides"] = serialize(guides)
    out["reviews"] = serialize(reviews.query({"tour": tour["_id"]}).sort("-created_at").all())
    return {"status": "success", "data": {"tour": out}}


@app.patch(f"{API}/tours/{{tour_id}}")
def update_tour(tour_id: str, req: TourUpdate, user=Depends(restrict_to("admin", "lead-guide"))):
    existing = tours.get(tour_id)
    if not existing:
        raise AppError("No tour found with that ID!", 404)
    fields = req.model_dump(exclude_unset=True)
    if "price" in fields or "price_discount" in fields:
        price = fields.get("price", existing.get("price"))
        discount = fields.get("price_discount", existing.get("price_discount"))
        if price is not None and discount is not None and discount >= price:
            raise AppError(
                f"Invalid input data: Discount price ({discount}) should be below regular price ({price})",
                400,
            )
    if fields.get("name"):
        fields["slug"] = slugify(fields["name"])
    if "guides" in fields:
        fields["guides"] = _object_ids(fields["guides"])
    tour = tours.update(tour_id, fields)
    return {"status": "success", "data": {"tour": _tour_out(tour)}}


@app.delete(f"{API}/tours/{{tour_id}}", status_code=204)
def delete_tour(tour_id: str, user=Depends(restrict_to("admin", "lead-guide"))):
    if not tours.get(tour_id) or not tours.delete(tour_id):
        raise AppError("No tour found with that ID!", 404)
    return Response(status_code=204)


# ---- Reviews ----

def _create_review(req: Review, user: Dict[str, Any], tour_id: Optional[str] = None) -> Dict[str, Any]:
    doc = req.model_dump(exclude_none=True)
    for key in SYSTEM_FIELDS:
        doc.pop(key, None)
    tour_ref = doc.get("tour") or tour_id
    if not tour_ref:
        raise AppError("Invalid input data: A review must belong to a tour", 400)
    if not tours.get(tour_ref):
        raise AppError("No tour found with that ID!", 404)
    doc["tour"] = ObjectId(tour_ref)
    doc["user"] = user["_id"]
    review = reviews.create(doc)
    return {"status": "success", "data": {"review": serialize(review)}}


@app.get(f"{API}/tours/{{tour_id}}/reviews")
def list_tour_reviews(tour_id: str, request: Request):
    docs = _run_features(
        reviews,
        parse_query_params(request.query_params),
        REVIEW_FIELD_TYPES,
        conditions={"tour": ObjectId(tour_id)},
    )
    return _list_response("reviews", docs)


@app.post(f"{API}/tours/{{tour_id}}/reviews", status_code=201)
def create_tour_review(tour_id: str, req: Review, user=Depends(restrict_to("user"))):
    return _create_review(req, user, tour_id)


@app.get(f"{API}/reviews")
def list_reviews(request: Request):
    docs = _run_features(reviews, parse_query_params(request.query_params), REVIEW_FIELD_TYPES)
    return _list_response("reviews", docs)


@app.post(f"{API}/reviews", status_code=201)
def create_review(req: Review, user=Depends(restrict_to("user"))):
    return _create_review(req, user)


@app.get(f"{API}/reviews/{{review_id}}")
def get_review(review_id: str):
    review = reviews.get(review_id)
    if not review:
        raise AppError("No review found with that ID!", 404)
    return {"status": "success", "data": {"review": serialize(review)}}


# ---- Auth ----

@app.post(f"{API}/users/signup", status_code=201)
def signup(req: SignupRequest, response: Response):
    new_user = User(
        name=req.name,
        email=req.email,
        role="user",
        **password_fields(req.password, is_new=True),
    )
    user = users.create(new_user)
    logger.info("User %s signed up", user["_id"])
    return create_send_token(user, response, 201)


@app.post(f"{API}/users/login")
def login(req: LoginRequest, response: Response):
    if not req.email or not req.password:
        raise AppError("Please provide email and password!", 400)
    user = users.query({"email": req.email.strip().lower()}).include_hidden("password").first()
    if not user or not check_password(req.password, user.get("password", "")):
        raise AppError("Invalid credentials!", 401)
    return create_send_token(user, response)


@app.post(f"{API}/users/forgotPassword")
def forgot_password(req: ForgotPasswordRequest, request: Request):
    user = users.query({"email": req.email.strip().lower()}).first()
    if not user:
        raise AppError("No user with that email!", 404)

    token, fields = create_password_reset_token()
    users.update(user["_id"], fields)

    reset_url = f"{str(request.base_url).rstrip('/')}{API}/users/resetPassword/{token}"
    message = (
        "You are receiving this email because you (or someone else) have requested "
        "the reset of the password for your account.\n\n"
        f"Please submit a PATCH request with your new password and password_confirm to: {reset_url}\n\n"
        "If you did not request this, please ignore this email and your password will remain unchanged.\n"
    )
    try:
        email_utils.send_email(
            email=user["email"],
            subject="Your password reset token (valid for 10 minutes)",
            message=message,
        )
    except (smtplib.SMTPException, OSError):
        logger.exception("Could not send password reset email to user %s", user["_id"])
        users.update(user["_id"], {}, unset=RESET_FIELDS)
        raise AppError("There was an error sending the email. Try again later!", 500)

    return {"status": "success", "message": f"An email has been sent to {user['email']} with further instructions!"}


@app.patch(f"{API}/users/resetPassword/{{token}}")
def reset_password(token: str, req: ResetPasswordRequest, response: Response):
    user = users.query(reset_token_conditions(token)).first()
    if not user:
        raise AppError("Token is invalid or has expired!", 400)
    updated = users.update(user["_id"], password_fields(req.password), unset=RESET_FIELDS)
    return create_send_token(updated, response)


@app.patch(f"{API}/users/updateMyPassword")
def update_my_password(req: UpdatePasswordRequest, response: Response, current=Depends(protect)):
    user = users.query({"_id": current["_id"]}).include_hidden("password").first()
    if not user:
        raise AppError("User not found!", 404)
    if not check_password(req.password_current, user.get("password", "")):
        raise AppError("Your current password is wrong!", 401)
    updated = users.update(user["_id"], password_fields(req.password))
    return create_send_token(updated, response)


# ---- Users ----

@app.patch(f"{API}/users/updateMe")
def update_me(req: UpdateMeRequest, current=Depends(protect)):
    if req.password is not None or req.password_confirm is not None:
        raise AppError("This route is not for password updates. Please use /updateMyPassword.", 400)
    fields = req.model_dump(include={"name", "email", "photo"}, exclude_unset=True, exclude_none=True)
    if "email" in fields:
        fields["email"] = fields["email"].lower()
    updated = users.update(current["_id"], fields)
    if not updated:
        raise AppError("No user found!", 404)
    return {"status": "success", "data": {"user": serialize(updated)}}


@app.delete(f"{API}/users/deleteMe", status_code=204)
def delete_me(current=Depends(protect)):
    users.update(current["_id"], {"active": False})
    logger.info("User %s deactivated their account", current["_id"])
    return Response(status_code=204)


@app.get(f"{API}/users/me")
def get_me(current=Depends(protect)):
    return {"status": "success", "data": {"user": serialize(current)}}


@app.get(f"{API}/users")
def list_users(request: Request, admin=Depends(restrict_to("admin"))):
    docs = _run_features(users, parse_query_params(request.query_params), USER_FIELD_TYPES)
    return _list_response("users", docs)


@app.get(f"{API}/users/{{user_id}}")
def get_user(user_id: str, admin=Depends(restrict_to("admin"))):
    user = users.get(user_id)
    if not user:
        raise AppError("No user found with that ID!", 404)
    return {"status": "success", "data": {"user": serialize(user)}}


@app.delete(f"{API}/users/{{user_id}}", status_code=204)
def delete_user(user_id: str, admin=Depends(restrict_to("admin"))):
    if not users.delete(user_id):
        raise AppError("No user found with that ID!", 404)
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

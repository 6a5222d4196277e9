import os
import logging
from datetime import datetime, timezone
from typing import Optional, Any, Dict

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Body, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError
from bson import ObjectId
from bson.errors import InvalidId

# Auth & Payments
from jose import JWTError, jwt
import stripe

from database import get_db, create_document, get_documents
from schemas import User as UserSchema, Lesson as LessonSchema, Report as ReportSchema, CheckoutRequest

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALGO = "HS256"
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE")

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")
STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)
SITE_DOMAIN = os.getenv("SITE_DOMAIN", "http://localhost:5173")

# Fixed server-side so clients cannot tamper with the price
PREMIUM_PRICE_CENTS = 1500
PREMIUM_CURRENCY = "usd"
PREMIUM_PRODUCT_NAME = "Digital Life Lessons Premium (lifetime)"

# Only changed through the like/favorite/comment routes
ENGAGEMENT_FIELDS = {"likes", "likesCount", "favorites", "favoriteCount", "comments"}
TOGGLE_ATTEMPTS = 3

app = FastAPI(title="Digital Life Lessons API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Helpers ----------

def now() -> datetime:
    return datetime.now(timezone.utc)


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["_id"] = str(d["_id"])
    return d


def insert_result(res) -> Dict[str, Any]:
    return {"acknowledged": res.acknowledged, "insertedId": str(res.inserted_id)}


def update_result(res) -> Dict[str, Any]:
    return {
        "acknowledged": res.acknowledged,
        "matchedCount": res.matched_count,
        "modifiedCount": res.modified_count,
    }


def delete_result(res) -> Dict[str, Any]:
    return {"acknowledged": res.acknowledged, "deletedCount": res.deleted_count}


def toggle_membership(db: Database, lesson_id: str, email: str, set_name: str, counter_name: str) -> Dict[str, Any]:
    """Add email to the lesson's set if absent, remove it if present.

    Each branch is a single conditional update, so the paired counter always
    equals the size of the set once a call settles, whatever other callers do.
    A concurrent toggle by the same email can make both branches miss; the
    pair is then retried while the lesson still exists.
    Returns the resulting membership and counter value.
    """
    lessons = db["lessons"]
    oid = to_obj_id(lesson_id)

    for _ in range(TOGGLE_ATTEMPTS):
        lesson = lessons.find_one_and_update(
            {"_id": oid, set_name: {"$ne": email}},
            {"$addToSet": {set_name: email}, "$inc": {counter_name: 1}},
            return_document=ReturnDocument.AFTER,
        )
        if lesson is not None:
            return {"member": True, "count": lesson.get(counter_name, 0)}

        lesson = lessons.find_one_and_update(
            {"_id": oid, set_name: email},
            {"$pull": {set_name: email}, "$inc": {counter_name: -1}},
            return_document=ReturnDocument.AFTER,
        )
        if lesson is not None:
            return {"member": False, "count": lesson.get(counter_name, 0)}

        if lessons.find_one({"_id": oid}, {"_id": 1}) is None:
            raise HTTPException(status_code=404, detail="Lesson not found")
        logger.info("Toggle of %s on lesson %s raced, retrying", set_name, lesson_id)

    raise HTTPException(status_code=409, detail="Lesson is being updated, try again")


# ---------- Auth ----------

def verify_token(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the caller's email from a bearer token issued by the identity provider."""
    credentials_exception = HTTPException(status_code=401, detail="Unauthorized access")
    if not authorization or not authorization.lower().startswith("bearer "):
        raise credentials_exception
    token = authorization.split(" ", 1)[1].strip()
    try:
        options = {"verify_aud": JWT_AUDIENCE is not None}
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO], audience=JWT_AUDIENCE, options=options)
    except JWTError:
        raise credentials_exception
    email = payload.get("email") or payload.get("sub")
    if not email:
        raise credentials_exception
    return email


def verify_admin(email: str = Depends(verify_token), db: Database = Depends(get_db)) -> Dict:
    user = db["users"].find_one({"email": email})
    if not user or user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden access")
    return serialize(user)


# ---------- Error handling ----------

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(PyMongoError)
async def database_exception_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------- Utility routes ----------

@app.get("/")
def read_root():
    return "Digital Life Lessoning.........!"


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "collections": [],
    }
    try:
        response["database_name"] = getattr(db, "name", "unknown")
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ---------- Users ----------

@app.post("/users")
def register(payload: UserSchema, db: Database = Depends(get_db)):
    users = db["users"]
    if users.find_one({"email": payload.email}):
        return {"message": "user already exists", "insertedId": None}
    user_doc = payload.model_dump(exclude_none=True)
    user_doc.update({"role": "user", "accessLevel": "free", "createdAt": now()})
    res = users.insert_one(user_doc)
    logger.info("Registered user %s", payload.email)
    return insert_result(res)


@app.get("/users")
def list_users(email: Optional[str] = None, admin=Depends(verify_admin), db: Database = Depends(get_db)):
    q: Dict[str, Any] = {}
    if email:
        q["email"] = email
    return [serialize(u) for u in get_documents(db, "users", q)]


@app.get("/users/email/{email}")
def get_user_by_email(email: str, db: Database = Depends(get_db)):
    user = db["users"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize(user)


@app.patch("/users/make-premium/{email}")
def make_premium(email: str, db: Database = Depends(get_db)):
    res = db["users"].update_one({"email": email}, {"$set": {"accessLevel": "premium"}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Upgraded %s to premium", email)
    return update_result(res)


def set_role(db: Database, user_id: str, role: str, admin: Dict) -> Dict[str, Any]:
    res = db["users"].update_one({"_id": to_obj_id(user_id)}, {"$set": {"role": role}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s set to role %s by %s", user_id, role, admin["email"])
    return update_result(res)


@app.patch("/users/make-admin/{user_id}")
def make_admin(user_id: str, admin=Depends(verify_admin), db: Database = Depends(get_db)):
    return set_role(db, user_id, "admin", admin)


@app.patch("/users/remove-admin/{user_id}")
def remove_admin(user_id: str, admin=Depends(verify_admin), db: Database = Depends(get_db)):
    return set_role(db, user_id, "user", admin)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, admin=Depends(verify_admin), db: Database = Depends(get_db)):
    res = db["users"].delete_one({"_id": to_obj_id(user_id)})
    logger.info("User %s deleted by %s", user_id, admin["email"])
    return delete_result(res)


@app.get("/admin/users")
def admin_list_users(admin=Depends(verify_admin), db: Database = Depends(get_db)):
    pipeline = [
        {"$lookup": {
            "from": "lessons",
            "localField": "email",
            "foreignField": "lessonerEmail",
            "as": "lessons",
        }},
        {"$addFields": {"totalLessons": {"$size": "$lessons"}}},
        {"$project": {"lessons": 0}},
        {"$sort": {"createdAt": -1}},
    ]
    return [serialize(u) for u in db["users"].aggregate(pipeline)]


# ---------- Lessons ----------

@app.get("/lessons")
def list_lessons(email: Optional[str] = None, db: Database = Depends(get_db)):
    q: Dict[str, Any] = {}
    if email:
        q["lessonerEmail"] = email
    return [serialize(lesson) for lesson in get_documents(db, "lessons", q)]


@app.get("/lessons/top-creators")
def top_creators(limit: int = Query(10, ge=1, le=100), db: Database = Depends(get_db)):
    pipeline = [
        {"$group": {
            "_id": "$lessonerEmail",
            "lessonerName": {"$first": "$lessonerName"},
            "totalLessons": {"$sum": 1},
        }},
        {"$sort": {"totalLessons": -1}},
        {"$limit": limit},
    ]
    return [
        {"email": c["_id"], "name": c.get("lessonerName"), "totalLessons": c["totalLessons"]}
        for c in db["lessons"].aggregate(pipeline)
    ]


@app.get("/lessons/{lesson_id}")
def get_lesson(lesson_id: str, db: Database = Depends(get_db)):
    lesson = db["lessons"].find_one({"_id": to_obj_id(lesson_id)})
    if not lesson:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return serialize(lesson)


@app.post("/lessons")
def create_lesson(payload: LessonSchema, db: Database = Depends(get_db)):
    lesson_doc = payload.model_dump(exclude=ENGAGEMENT_FIELDS, exclude_none=True)
    lesson_doc.update({"likes": [], "likesCount": 0, "favorites": [], "favoriteCount": 0, "comments": []})
    lesson_id = create_document(db, "lessons", lesson_doc)
    return {"acknowledged": True, "insertedId": lesson_id}


@app.patch("/lessons/{lesson_id}")
def update_lesson(lesson_id: str, fields: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    updates = {k: v for k, v in fields.items() if k != "_id" and k not in ENGAGEMENT_FIELDS}
    oid = to_obj_id(lesson_id)
    if not updates:
        if not db["lessons"].find_one({"_id": oid}, {"_id": 1}):
            raise HTTPException(status_code=404, detail="Lesson not found")
        return {"acknowledged": True, "matchedCount": 1, "modifiedCount": 0}
    res = db["lessons"].update_one({"_id": oid}, {"$set": updates})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return update_result(res)


@app.delete("/lessons/{lesson_id}")
def delete_lesson(lesson_id: str, admin=Depends(verify_admin), db: Database = Depends(get_db)):
    res = db["lessons"].delete_one({"_id": to_obj_id(lesson_id)})
    if res.deleted_count:
        db["reports"].delete_many({"lessonId": lesson_id})
        logger.info("Lesson %s deleted by %s", lesson_id, admin["email"])
    return delete_result(res)


@app.patch("/lessons/like/{lesson_id}")
def toggle_like(lesson_id: str, email: str = Depends(verify_token), db: Database = Depends(get_db)):
    state = toggle_membership(db, lesson_id, email, "likes", "likesCount")
    return {"liked": state["member"], "likesCount": state["count"]}


@app.patch("/lessons/favorite/{lesson_id}")
def toggle_favorite(lesson_id: str, email: str = Depends(verify_token), db: Database = Depends(get_db)):
    state = toggle_membership(db, lesson_id, email, "favorites", "favoriteCount")
    return {"favorited": state["member"], "favoriteCount": state["count"]}


@app.patch("/lessons/comment/{lesson_id}")
def add_comment(lesson_id: str, comment: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    comment = {**comment}
    comment.setdefault("createdAt", now())
    res = db["lessons"].update_one({"_id": to_obj_id(lesson_id)}, {"$push": {"comments": comment}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return update_result(res)


@app.get("/like")
def liked_lessons(email: str, caller: str = Depends(verify_token), db: Database = Depends(get_db)):
    return [serialize(lesson) for lesson in get_documents(db, "lessons", {"likes": email})]


@app.get("/favorites")
def favorite_lessons(email: str, caller: str = Depends(verify_token), db: Database = Depends(get_db)):
    return [serialize(lesson) for lesson in get_documents(db, "lessons", {"favorites": email})]


# ---------- Reports ----------

@app.post("/report")
def submit_report(payload: ReportSchema, db: Database = Depends(get_db)):
    report_id = create_document(db, "reports", payload.model_dump(exclude_none=True))
    logger.info("Report %s filed against lesson %s (%s)", report_id, payload.lessonId, payload.reason)
    return {"acknowledged": True, "insertedId": report_id}


@app.get("/reports")
def list_reports(admin=Depends(verify_admin), db: Database = Depends(get_db)):
    return [serialize(r) for r in get_documents(db, "reports")]


@app.delete("/reports/lesson/{lesson_id}")
def delete_reports_for_lesson(lesson_id: str, admin=Depends(verify_admin), db: Database = Depends(get_db)):
    res = db["reports"].delete_many({"lessonId": lesson_id})
    logger.info("%d report(s) on lesson %s dismissed by %s", res.deleted_count, lesson_id, admin["email"])
    return delete_result(res)


@app.delete("/reports/{report_id}")
def delete_report(report_id: str, admin=Depends(verify_admin), db: Database = Depends(get_db)):
    res = db["reports"].delete_one({"_id": to_obj_id(report_id)})
    return delete_result(res)


# ---------- Payments ----------

@app.post("/create-checkout-session")
def create_checkout_session(req: CheckoutRequest, caller: str = Depends(verify_token)):
    if not stripe.api_key:
        raise HTTPException(status_code=400, detail="Stripe is not configured")

    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            customer_email=req.userEmail,
            line_items=[{
                "price_data": {
                    "currency": PREMIUM_CURRENCY,
                    "product_data": {"name": PREMIUM_PRODUCT_NAME},
                    "unit_amount": PREMIUM_PRICE_CENTS,
                },
                "quantity": 1,
            }],
            metadata={"userId": req.userId, "userName": req.userName or ""},
            success_url=f"{SITE_DOMAIN}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{SITE_DOMAIN}/payment-cancelled",
        )
    except stripe.StripeError:
        logger.exception("Checkout session creation failed for %s", req.userEmail)
        raise HTTPException(status_code=500, detail="Internal server error")
    logger.info("Checkout session %s created for %s", session.id, req.userEmail)
    return {"url": session.url}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 3000))
    uvicorn.run(app, host="0.0.0.0", port=port)

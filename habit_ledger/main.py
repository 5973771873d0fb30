from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
import logging
import os
from pathlib import Path

from habit_ledger.database import engine, get_db, Base
from habit_ledger import models  # Import all models to register them with Base
from habit_ledger.schemas import (
    UserCreate, UserResponse,
    HabitCreate, HabitResponse, HabitDeleteResponse,
    CompleteRequest, CompleteHabitResponse,
    ForgiveRequest, ForgiveHabitResponse,
    CompletionHistoryResponse, TodayCompletionsResponse,
    GamificationResponse, XPHistoryResponse,
    RecalculateResponse, AuditResponse
)
from habit_ledger.auth import verify_api_key
from habit_ledger.exceptions import HabitLedgerException, UserNotFoundException
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.services.completion_service import CompletionService
from habit_ledger.services.gamification_service import GamificationService
from habit_ledger.services.habit_service import HabitService
from habit_ledger.services.scheduler_service import start_scheduler, stop_scheduler
from habit_ledger.constants import (
    DEFAULT_LOG_DIRECTORY_PROD, DEFAULT_LOG_DIRECTORY_DEV, CORS_ALLOWED_ORIGINS
)

LOG_DIR = os.getenv("HABIT_LEDGER_LOG_DIR", DEFAULT_LOG_DIRECTORY_PROD)
LOG_FILE = os.getenv("HABIT_LEDGER_LOG_FILE", "app.log")

# Create log directory if it doesn't exist (for development)
try:
    Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
    log_path = Path(LOG_DIR) / LOG_FILE
except PermissionError:
    # Fallback to local directory if no permissions for /var/log
    LOG_DIR = DEFAULT_LOG_DIRECTORY_DEV
    Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
    log_path = Path(LOG_DIR) / LOG_FILE

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(log_path),
        logging.StreamHandler()  # Also log to console
    ]
)

logger = logging.getLogger("habit_ledger")

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Habit Ledger API",
    description="Habit completions, streaks, forgiveness tokens and XP levels",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HabitLedgerException)
async def habit_ledger_exception_handler(request: Request, exc: HabitLedgerException):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Startup event
@app.on_event("startup")
async def startup_event():
    logger.info(f"Habit Ledger API started. Logging to: {log_path}")
    start_scheduler()


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down Habit Ledger API")
    stop_scheduler()


def _xp_state(xp) -> dict:
    return {
        "awarded": xp.awarded,
        "level_bonus": xp.level_bonus,
        "total_xp": xp.total_xp,
        "level": xp.level,
        "previous_level": xp.previous_level,
        "leveled_up": xp.leveled_up,
    }


def _stats(stats) -> dict:
    return {
        "current_streak": stats.current_streak,
        "longest_streak": stats.longest_streak,
        "total_completions": stats.total_completions,
        "consistency_rate": stats.consistency_rate,
    }


# Health check (no auth required)
@app.get("/")
async def root():
    return {"message": "Habit Ledger API", "status": "active"}


# Users
@app.post("/api/users", response_model=UserResponse, status_code=201, dependencies=[Depends(verify_api_key)])
def create_user(user: UserCreate, db: Session = Depends(get_db)):
    """Create a user with a full forgiveness token balance"""
    return HabitService(db).create_user(user)


@app.get("/api/users/{user_id}", response_model=UserResponse, dependencies=[Depends(verify_api_key)])
async def get_user(user_id: int, db: Session = Depends(get_db)):
    user = UserRepository.get_by_id(db, user_id)
    if not user:
        raise UserNotFoundException(user_id)
    return user


@app.get("/api/users/{user_id}/gamification", response_model=GamificationResponse, dependencies=[Depends(verify_api_key)])
async def get_gamification(user_id: int, db: Session = Depends(get_db)):
    """Level progress and token balance"""
    user = UserRepository.get_by_id(db, user_id)
    if not user:
        raise UserNotFoundException(user_id)
    return GamificationService(db).get_level_progress(user)


@app.get("/api/users/{user_id}/xp-history", response_model=XPHistoryResponse, dependencies=[Depends(verify_api_key)])
async def get_xp_history(
    user_id: int,
    page: int = 1,
    limit: int = 20,
    source: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Paginated XP transactions, newest first"""
    if not UserRepository.get_by_id(db, user_id):
        raise UserNotFoundException(user_id)
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    return GamificationService(db).get_xp_history(user_id, page, limit, source)


# Habits
@app.post("/api/users/{user_id}/habits", response_model=HabitResponse, status_code=201, dependencies=[Depends(verify_api_key)])
def create_habit(user_id: int, habit: HabitCreate, db: Session = Depends(get_db)):
    return HabitService(db).create_habit(user_id, habit)


@app.delete("/api/users/{user_id}/habits/{habit_id}", response_model=HabitDeleteResponse, dependencies=[Depends(verify_api_key)])
def delete_habit(user_id: int, habit_id: int, db: Session = Depends(get_db)):
    """Delete a habit and refund the XP its completions earned"""
    result = HabitService(db).delete_habit(user_id, habit_id)
    user = UserRepository.get_by_id(db, user_id)
    return {
        "habit_id": result.habit_id,
        "completions_deleted": result.completions_deleted,
        "xp_refunded": result.xp_refunded,
        "total_xp": user.total_xp,
        "level": user.level,
    }


@app.post("/api/users/{user_id}/habits/{habit_id}/complete", response_model=CompleteHabitResponse, status_code=201, dependencies=[Depends(verify_api_key)])
def complete_habit(
    user_id: int,
    habit_id: int,
    request: Optional[CompleteRequest] = None,
    db: Session = Depends(get_db)
):
    """Complete a habit for today"""
    request = request or CompleteRequest()
    result = HabitService(db).complete_habit(user_id, habit_id, request.day, request.timezone)
    return {
        "completion": result.completion,
        "stats": _stats(result.stats),
        "xp": _xp_state(result.xp),
    }


@app.post("/api/users/{user_id}/habits/{habit_id}/forgive", response_model=ForgiveHabitResponse, status_code=201, dependencies=[Depends(verify_api_key)])
def forgive_habit(
    user_id: int,
    habit_id: int,
    request: ForgiveRequest,
    db: Session = Depends(get_db)
):
    """Use a forgiveness token to credit a missed day"""
    result = HabitService(db).use_forgiveness_token(user_id, habit_id, request.day, request.timezone)
    return {
        "completion": result.completion.completion,
        "stats": _stats(result.completion.stats),
        "xp": _xp_state(result.completion.xp),
        "remaining_tokens": result.authorization.remaining_tokens,
        "daily_usage_remaining": result.authorization.daily_usage_remaining,
        "abuse_flags": result.abuse.flags,
    }


@app.get("/api/users/{user_id}/habits/{habit_id}/completions", response_model=CompletionHistoryResponse, dependencies=[Depends(verify_api_key)])
async def get_completions(
    user_id: int,
    habit_id: int,
    days: int = 30,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db)
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    return CompletionService(db).get_completion_history(habit_id, user_id, days, page, limit)


@app.get("/api/users/{user_id}/completions/today", response_model=TodayCompletionsResponse, dependencies=[Depends(verify_api_key)])
async def get_today_completions(user_id: int, timezone: Optional[str] = None, db: Session = Depends(get_db)):
    return {"habit_ids": CompletionService(db).get_today_habit_ids(user_id, timezone)}


# Maintenance
@app.post("/api/users/{user_id}/recalculate", response_model=RecalculateResponse, dependencies=[Depends(verify_api_key)])
def recalculate_stats(user_id: int, db: Session = Depends(get_db)):
    """Recompute every habit's cached streak statistics"""
    return {"habits_updated": HabitService(db).recalculate_stats(user_id)}


@app.get("/api/users/{user_id}/audit", response_model=AuditResponse, dependencies=[Depends(verify_api_key)])
async def audit_integrity(user_id: int, db: Session = Depends(get_db)):
    """Check the ledger invariants for a user"""
    violations = HabitService(db).audit_integrity(user_id)
    return {"user_id": user_id, "ok": not violations, "violations": violations}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("habit_ledger.main:app", host="0.0.0.0", port=8000, reload=False)

import logging
from datetime import datetime
from typing import Annotated, Optional, List, Dict, Any

import stripe
from fastapi import FastAPI, Depends, HTTPException, Request, BackgroundTasks
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from llm_tracker.config import (
    CORS_ORIGINS,
    LOG_LEVEL,
    AI_ANALYSIS_RATE_LIMIT,
    AI_ANALYSIS_RATE_WINDOW_SECONDS,
)
from llm_tracker.db.engine import Base, engine, SessionLocal
from llm_tracker.models.user_models import User, Profile, new_id
from llm_tracker.models.project_models import Project, Keyword
from llm_tracker.models.report_models import Report, ApiResponse
from llm_tracker.models.subscription_models import Subscriber  # noqa: F401 (table registration)
from llm_tracker.models.historical_models import HistoricalSnapshot  # noqa: F401

from llm_tracker.services import brand_analysis
from llm_tracker.services.auth_utils import (
    InvalidTokenError,
    authenticate_user,
    create_access_token,
    hash_password,
    normalize_email,
    user_id_from_token,
)
from llm_tracker.services.validation import sanitize_input, sanitize_list
from llm_tracker.services.plans import (
    PAID_PLANS,
    PlanLimitError,
    TrialExpiredError,
    ensure_can_create,
    plan_status,
    start_trial,
)
from llm_tracker.services.keyword_import import (
    TEMPLATE_CSV,
    parse_keyword_lines,
    parse_keyword_csv,
    mark_duplicates,
    insert_keywords,
    results_to_csv,
)
from llm_tracker.services.tracking_report import (
    create_tracking_report,
    run_keyword_tracking,
    summarize_competitors,
    competitor_matrix,
)
from llm_tracker.services.historical_tracking import (
    get_historical_data,
    calculate_trend_metrics,
    setup_tracking_schedule,
    migrate_report_history,
)
from llm_tracker.services import billing
from llm_tracker.services.ai_analysis import run_ai_analysis
from llm_tracker.services.rate_limit import SlidingWindowRateLimiter

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="LLM Tracker API", version="1.0.0")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

# Per-user limiter for /ai-analysis (process-wide)
ai_rate_limiter = SlidingWindowRateLimiter(
    max_requests=AI_ANALYSIS_RATE_LIMIT,
    window_seconds=AI_ANALYSIS_RATE_WINDOW_SECONDS,
)

#  CORS setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- DB Session Dependency ---
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# --- Create tables on startup ---
@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)


# --- Schemas (Pydantic models) ---

Name = Annotated[str, Field(min_length=1, max_length=100)]


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    full_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileOut(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    company: Optional[str] = None
    plan: str
    plan_expires_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    projects_limit: int
    keywords_limit: int
    reports_limit: int
    created_at: datetime

    class Config:
        from_attributes = True


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=100)
    company: Optional[str] = Field(default=None, max_length=100)


class ProjectCreate(BaseModel):
    name: Name
    brand_name: Name
    description: Optional[str] = Field(default=None, max_length=500)
    competitors: List[Name] = Field(default_factory=list, max_length=20)


class ProjectUpdate(BaseModel):
    name: Optional[Name] = None
    brand_name: Optional[Name] = None
    description: Optional[str] = Field(default=None, max_length=500)
    competitors: Optional[List[Name]] = Field(default=None, max_length=20)


class BrandUpdate(BaseModel):
    brand_name: Name


class CompetitorCreate(BaseModel):
    name: Name


class KeywordCreate(BaseModel):
    keyword: Name
    priority: int = Field(default=1, ge=1, le=5)


class KeywordOut(BaseModel):
    id: str
    project_id: str
    keyword: str
    priority: int
    created_at: datetime

    class Config:
        from_attributes = True


class ProjectOut(BaseModel):
    id: str
    name: str
    brand_name: str
    description: Optional[str] = None
    competitors: List[str]
    keyword_count: int
    created_at: datetime
    updated_at: datetime


class ProjectDetailOut(ProjectOut):
    keywords: List[KeywordOut]


class KeywordImportRequest(BaseModel):
    """
    Either pasted lines (`text`) or the contents of an uploaded CSV (`csv`).
    """
    text: Optional[str] = None
    csv: Optional[str] = None


class ImportEntry(BaseModel):
    keyword: str
    priority: int = 1
    status: str = "pending"
    error: Optional[str] = None


class KeywordImportResult(BaseModel):
    success: int
    errors: int
    entries: List[ImportEntry]


class ImportResultsCsvRequest(BaseModel):
    entries: List[ImportEntry]


class ReportRequest(BaseModel):
    model: Optional[str] = None
    openai_api_key: Optional[str] = None


class ReportOut(BaseModel):
    id: str
    project_id: str
    report_type: str
    status: str
    metadata: Dict[str, Any] = {}
    results: Dict[str, Any] = {}
    pdf_url: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ReportSummaryOut(BaseModel):
    id: str
    project_id: str
    project_name: str
    brand_name: str
    report_type: str
    status: str
    created_at: datetime
    completed_at: Optional[datetime] = None


class ReportStartResponse(BaseModel):
    status: str = "started"
    report_id: str


class ApiResponseOut(BaseModel):
    id: str
    report_id: str
    provider: str
    keyword: str
    raw_response: Dict[str, Any]
    response_metadata: Dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True


class ScheduleRequest(BaseModel):
    frequency: str
    priority: str = "medium"


class ScheduleOut(BaseModel):
    id: str
    project_id: str
    keyword_id: str
    frequency: str
    priority: str
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    is_active: bool

    class Config:
        from_attributes = True


class CheckoutRequest(BaseModel):
    plan: str


class UrlResponse(BaseModel):
    url: str


class AIAnalysisRequest(BaseModel):
    prompt: str = Field(min_length=1)
    type: str = "analysis"
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000)


# ----- Auth helpers (dependencies) -----


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    Decodes JWT and loads the user it was issued for.
    """
    try:
        user_id = user_id_from_token(token)
    except InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e))

    user = db.query(User).filter(User.id == user_id).one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=403, detail="User is inactive")

    return user


def get_current_profile(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Profile:
    profile = db.query(Profile).filter(Profile.id == current_user.id).one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


# ----- Ownership helpers -----
# Rows belonging to someone else are reported as missing.


def get_owned_project(db: Session, project_id: str, user: User) -> Project:
    project = (
        db.query(Project)
        .filter(Project.id == project_id, Project.user_id == user.id)
        .one_or_none()
    )
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def get_owned_report(db: Session, report_id: str, user: User) -> Report:
    report = (
        db.query(Report)
        .join(Project, Report.project_id == Project.id)
        .filter(Report.id == report_id, Project.user_id == user.id)
        .one_or_none()
    )
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


def get_project_keyword(db: Session, project: Project, keyword_id: str) -> Keyword:
    keyword = (
        db.query(Keyword)
        .filter(Keyword.id == keyword_id, Keyword.project_id == project.id)
        .one_or_none()
    )
    if not keyword:
        raise HTTPException(status_code=404, detail="Keyword not found")
    return keyword


# ----- Plan enforcement -----


def enforce_plan(
    db: Session,
    profile: Profile,
    kind: str,
    adding: int = 1,
    usage: Optional[Dict[str, int]] = None,
) -> None:
    """
    Translate plan/trial errors into a 403 with a machine-readable detail.
    """
    try:
        ensure_can_create(db, profile, kind, adding=adding, usage=usage)
    except TrialExpiredError as e:
        raise HTTPException(
            status_code=403,
            detail={"code": "trial_expired", "message": str(e)},
        )
    except PlanLimitError as e:
        raise HTTPException(
            status_code=403,
            detail={
                "code": "limit_reached",
                "kind": e.kind,
                "limit": e.limit,
                "message": str(e),
            },
        )


def _user_competitor_names(
    db: Session,
    user_id: str,
    exclude_project_id: Optional[str] = None,
) -> set:
    names = set()
    for project in db.query(Project).filter(Project.user_id == user_id).all():
        if project.id == exclude_project_id:
            continue
        names.update(project.competitors or [])
    return names


def _enforce_new_competitors(
    db: Session,
    profile: Profile,
    names: List[str],
    project: Optional[Project] = None,
) -> None:
    """
    Check the competitor limit against the distinct names the user would
    track once `names` is stored on `project` (replacing its current list).
    Nothing is checked when every name is already tracked somewhere.
    """
    known = _user_competitor_names(db, profile.id)
    if all(n in known for n in names):
        return

    others = known
    if project is not None:
        others = _user_competitor_names(db, profile.id, exclude_project_id=project.id)
    adding = len(set(names) - others)
    enforce_plan(db, profile, "competitors", adding=adding, usage={"competitors": len(others)})


def _unique(items: List[str]) -> List[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


# ----- Serialisation helpers -----


def _project_out(project: Project) -> ProjectOut:
    return ProjectOut(
        id=project.id,
        name=project.name,
        brand_name=project.brand_name,
        description=project.description,
        competitors=list(project.competitors or []),
        keyword_count=len(project.keywords),
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


def _project_detail_out(project: Project) -> ProjectDetailOut:
    base = _project_out(project)
    return ProjectDetailOut(
        **base.model_dump(),
        keywords=[KeywordOut.model_validate(k) for k in project.keywords],
    )


def _report_out(report: Report) -> ReportOut:
    return ReportOut(
        id=report.id,
        project_id=report.project_id,
        report_type=report.report_type,
        status=report.status,
        metadata=report.report_metadata or {},
        results=report.results or {},
        pdf_url=report.pdf_url,
        created_at=report.created_at,
        completed_at=report.completed_at,
    )


def _report_summary_out(report: Report, project: Project) -> ReportSummaryOut:
    return ReportSummaryOut(
        id=report.id,
        project_id=report.project_id,
        project_name=project.name,
        brand_name=project.brand_name,
        report_type=report.report_type,
        status=report.status,
        created_at=report.created_at,
        completed_at=report.completed_at,
    )


# --- Background report helper ---

def _mark_report_failed(db: Session, report_id: str) -> None:
    report = db.query(Report).filter(Report.id == report_id).one_or_none()
    if report:
        report.status = "failed"
        report.completed_at = datetime.utcnow()
        db.commit()


def _run_report_background(
    report_id: str,
    model: Optional[str],
    api_key: Optional[str],
):
    """
    Background task: analyses every keyword of the report's project without
    blocking the original HTTP request.
    """
    db = SessionLocal()
    try:
        report = db.query(Report).filter(Report.id == report_id).one_or_none()
        if not report:
            return

        project = report.project
        run_keyword_tracking(
            db,
            report,
            project,
            list(project.keywords),
            model=model,
            api_key=api_key,
        )
    except Exception:
        logger.exception("Background report %s failed", report_id)
        db.rollback()
        _mark_report_failed(db, report_id)
    finally:
        db.close()


def _prepare_report(
    db: Session,
    project: Project,
    user: User,
    profile: Profile,
    payload: ReportRequest,
) -> Report:
    if not project.keywords:
        raise HTTPException(
            status_code=400,
            detail="Add at least one keyword before generating a report",
        )
    if not (payload.openai_api_key or brand_analysis.OPENAI_API_KEY):
        raise HTTPException(status_code=500, detail="OPENAI_API_KEY not set in environment")

    enforce_plan(db, profile, "reports")

    report = create_tracking_report(db, project, user.id)
    db.commit()
    logger.info("Started report %s for project %s", report.id, project.id)
    return report


# --- Endpoints ---

@app.get("/health")
def health():
    return JSONResponse({"status": "ok"})


# ----- Auth endpoints -----

@app.post("/auth/signup", response_model=Token)
def signup(payload: SignupRequest, db: Session = Depends(get_db)):
    """
    Creates the user and its profile on a fresh trial. Returns a token so
    the frontend can log straight in.
    """
    email = normalize_email(payload.email)
    existing = db.query(User).filter(User.email == email).one_or_none()
    if existing:
        raise HTTPException(status_code=400, detail="User with this email already exists")

    user = User(
        id=new_id(),
        email=email,
        hashed_password=hash_password(payload.password),
        is_active=True,
    )
    profile = Profile(
        id=user.id,
        email=email,
        full_name=sanitize_input(payload.full_name or "") or None,
    )
    start_trial(profile)

    db.add(user)
    db.add(profile)
    db.commit()

    logger.info("New signup %s", user.id)
    return Token(access_token=create_access_token(user.id))


@app.post("/auth/login", response_model=Token)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate_user(db, payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Incorrect email or password")

    if not user.is_active:
        raise HTTPException(status_code=403, detail="User is inactive")

    return Token(access_token=create_access_token(user.id))


@app.get("/auth/me", response_model=ProfileOut)
def read_me(profile: Profile = Depends(get_current_profile)):
    return profile


@app.patch("/profile", response_model=ProfileOut)
def update_profile(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
):
    updates = payload.model_dump(exclude_unset=True)
    for field, value in updates.items():
        setattr(profile, field, sanitize_input(value or "") or None)
    db.commit()
    db.refresh(profile)
    return profile


@app.get("/plan")
def get_plan(
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
):
    return plan_status(db, profile)


# ----- Projects -----

@app.get("/projects", response_model=List[ProjectOut])
def list_projects(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = (
        db.query(Project)
        .filter(Project.user_id == current_user.id)
        .order_by(Project.created_at.desc())
        .all()
    )
    return [_project_out(p) for p in rows]


@app.post("/projects", response_model=ProjectDetailOut)
def create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
):
    name = sanitize_input(payload.name)
    brand_name = sanitize_input(payload.brand_name)
    if not name or not brand_name:
        raise HTTPException(status_code=400, detail="Project name and brand name are required")
    competitors = _unique(sanitize_list(payload.competitors))

    enforce_plan(db, profile, "projects")
    _enforce_new_competitors(db, profile, competitors)

    project = Project(
        user_id=profile.id,
        name=name,
        brand_name=brand_name,
        description=sanitize_input(payload.description or "") or None,
        competitors=competitors,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return _project_detail_out(project)


@app.get("/projects/{project_id}", response_model=ProjectDetailOut)
def get_project(
    project_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    return _project_detail_out(project)


@app.patch("/projects/{project_id}", response_model=ProjectDetailOut)
def update_project(
    project_id: str,
    payload: ProjectUpdate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    updates = payload.model_dump(exclude_unset=True)

    if updates.get("name") is not None:
        name = sanitize_input(updates["name"])
        if not name:
            raise HTTPException(status_code=400, detail="Project name is required")
        project.name = name

    if updates.get("brand_name") is not None:
        brand_name = sanitize_input(updates["brand_name"])
        if not brand_name:
            raise HTTPException(status_code=400, detail="Brand name is required")
        project.brand_name = brand_name

    if "description" in updates:
        project.description = sanitize_input(updates["description"] or "") or None

    if updates.get("competitors") is not None:
        competitors = _unique(sanitize_list(updates["competitors"]))
        _enforce_new_competitors(db, profile, competitors, project=project)
        project.competitors = competitors

    db.commit()
    db.refresh(project)
    return _project_detail_out(project)


@app.delete("/projects/{project_id}")
def delete_project(
    project_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    db.delete(project)
    db.commit()
    logger.info("Deleted project %s", project_id)
    return {"status": "deleted", "project_id": project_id}


@app.put("/projects/{project_id}/brand", response_model=ProjectDetailOut)
def update_brand(
    project_id: str,
    payload: BrandUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    brand_name = sanitize_input(payload.brand_name)
    if not brand_name:
        raise HTTPException(status_code=400, detail="Brand name is required")
    project.brand_name = brand_name
    db.commit()
    db.refresh(project)
    return _project_detail_out(project)


@app.post("/projects/{project_id}/competitors", response_model=ProjectDetailOut)
def add_competitor(
    project_id: str,
    payload: CompetitorCreate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    name = sanitize_input(payload.name)
    if not name:
        raise HTTPException(status_code=400, detail="Competitor name is required")

    current = list(project.competitors or [])
    if name in current:
        raise HTTPException(status_code=400, detail="Competitor already added")

    _enforce_new_competitors(db, profile, current + [name], project=project)

    project.competitors = current + [name]
    db.commit()
    db.refresh(project)
    return _project_detail_out(project)


@app.delete("/projects/{project_id}/competitors/{name}", response_model=ProjectDetailOut)
def remove_competitor(
    project_id: str,
    name: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    current = list(project.competitors or [])
    if name not in current:
        raise HTTPException(status_code=404, detail="Competitor not found")

    project.competitors = [c for c in current if c != name]
    db.commit()
    db.refresh(project)
    return _project_detail_out(project)


# ----- Keywords -----

@app.post("/projects/{project_id}/keywords", response_model=KeywordOut)
def add_keyword(
    project_id: str,
    payload: KeywordCreate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    text = sanitize_input(payload.keyword)
    if not text:
        raise HTTPException(status_code=400, detail="Keyword is required")

    existing = (
        db.query(Keyword)
        .filter(Keyword.project_id == project.id, Keyword.keyword == text)
        .one_or_none()
    )
    if existing:
        raise HTTPException(status_code=409, detail="Keyword already exists")

    enforce_plan(db, profile, "keywords")

    keyword = Keyword(project_id=project.id, keyword=text, priority=payload.priority)
    db.add(keyword)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Keyword already exists")
    db.refresh(keyword)
    return keyword


@app.delete("/projects/{project_id}/keywords/{keyword_id}")
def delete_keyword(
    project_id: str,
    keyword_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    keyword = get_project_keyword(db, project, keyword_id)
    db.delete(keyword)
    db.commit()
    return {"status": "deleted", "keyword_id": keyword_id}


@app.post("/projects/{project_id}/keywords/import", response_model=KeywordImportResult)
def import_keywords(
    project_id: str,
    payload: KeywordImportRequest,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
    current_user: User = Depends(get_current_user),
):
    """
    Bulk import. Every entry comes back with its own status, so one bad line
    does not fail the batch.
    """
    project = get_owned_project(db, project_id, current_user)

    if payload.csv:
        entries = parse_keyword_csv(payload.csv)
    elif payload.text:
        entries = parse_keyword_lines(payload.text)
    else:
        raise HTTPException(status_code=400, detail="Provide keywords as text or csv")

    if not entries:
        raise HTTPException(status_code=400, detail="No keywords found")

    mark_duplicates(entries, [k.keyword for k in project.keywords])

    new_count = sum(1 for e in entries if e["status"] == "pending")
    if new_count:
        enforce_plan(db, profile, "keywords", adding=new_count)

    counts = insert_keywords(db, project, entries)
    db.commit()

    return KeywordImportResult(
        success=counts["success"],
        errors=counts["errors"],
        entries=[ImportEntry(**e) for e in entries],
    )


@app.get("/keywords/import-template")
def keyword_import_template():
    return Response(
        content=TEMPLATE_CSV,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="keyword-import-template.csv"'},
    )


@app.post("/keywords/import-results.csv")
def keyword_import_results_csv(
    payload: ImportResultsCsvRequest,
    current_user: User = Depends(get_current_user),
):
    content = results_to_csv([e.model_dump() for e in payload.entries])
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="keyword-import-results.csv"'},
    )


# ----- Dashboard -----

@app.get("/dashboard")
def dashboard(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    projects = db.query(Project).filter(Project.user_id == current_user.id).all()
    project_by_id = {p.id: p for p in projects}

    keyword_count = (
        db.query(func.count(Keyword.id))
        .join(Project, Keyword.project_id == Project.id)
        .filter(Project.user_id == current_user.id)
        .scalar()
    ) or 0

    reports_query = db.query(Report).filter(Report.user_id == current_user.id)
    recent = reports_query.order_by(Report.created_at.desc()).limit(5).all()

    return {
        "projects": len(projects),
        "keywords": int(keyword_count),
        "reports": reports_query.count(),
        "competitors": len(_user_competitor_names(db, current_user.id)),
        "recent_reports": [
            _report_summary_out(r, project_by_id[r.project_id])
            for r in recent
            if r.project_id in project_by_id
        ],
    }


# ----- Tracking reports -----

@app.post("/projects/{project_id}/reports", response_model=ReportOut)
def generate_report(
    project_id: str,
    payload: ReportRequest,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
    current_user: User = Depends(get_current_user),
):
    """
    Synchronous version. For projects with many keywords, prefer
    /projects/{id}/reports/async from the frontend to avoid browser timeouts.
    """
    project = get_owned_project(db, project_id, current_user)
    report = _prepare_report(db, project, current_user, profile, payload)
    report_id = report.id

    try:
        run_keyword_tracking(
            db,
            report,
            project,
            list(project.keywords),
            model=payload.model,
            api_key=payload.openai_api_key,
        )
    except Exception:
        logger.exception("Report %s failed", report_id)
        db.rollback()
        _mark_report_failed(db, report_id)
        raise HTTPException(status_code=500, detail="Report generation failed")

    db.refresh(report)
    return _report_out(report)


@app.post("/projects/{project_id}/reports/async", response_model=ReportStartResponse)
def generate_report_async(
    project_id: str,
    payload: ReportRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
    current_user: User = Depends(get_current_user),
):
    """
    Fire-and-forget variant: the report is created in `processing` and the
    frontend polls /reports/{id} until it is completed or failed.
    """
    project = get_owned_project(db, project_id, current_user)
    report = _prepare_report(db, project, current_user, profile, payload)

    background_tasks.add_task(
        _run_report_background,
        report_id=report.id,
        model=payload.model,
        api_key=payload.openai_api_key,
    )

    return ReportStartResponse(status="started", report_id=report.id)


@app.get("/reports", response_model=List[ReportSummaryOut])
def list_reports(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = (
        db.query(Report, Project)
        .join(Project, Report.project_id == Project.id)
        .filter(Project.user_id == current_user.id)
        .order_by(Report.created_at.desc())
        .all()
    )
    return [_report_summary_out(report, project) for report, project in rows]


@app.get("/reports/{report_id}", response_model=ReportOut)
def get_report(
    report_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _report_out(get_owned_report(db, report_id, current_user))


@app.get("/reports/{report_id}/responses", response_model=List[ApiResponseOut])
def get_report_responses(
    report_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    report = get_owned_report(db, report_id, current_user)
    return (
        db.query(ApiResponse)
        .filter(ApiResponse.report_id == report.id)
        .order_by(ApiResponse.created_at)
        .all()
    )


@app.get("/reports/{report_id}/competitors")
def get_report_competitors(
    report_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    report = get_owned_report(db, report_id, current_user)
    results = (report.results or {}).get("keywords") or []
    brand_name = (report.report_metadata or {}).get("brand_name") or report.project.brand_name

    return {
        "report_id": report.id,
        "brand_name": brand_name,
        "competitors": summarize_competitors(results, brand_name),
        "matrix": competitor_matrix(results, brand_name),
    }


# ----- Historical tracking -----

@app.post("/projects/{project_id}/history/migrate")
def migrate_history(
    project_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    summary = migrate_report_history(db, project)
    db.commit()
    return summary


@app.get("/projects/{project_id}/history")
def project_history(
    project_id: str,
    time_range: str = "30d",
    keyword: Optional[str] = None,
    competitors: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    `competitors` is a comma-separated list of names; `keyword` matches
    either a keyword id or the keyword text.
    """
    project = get_owned_project(db, project_id, current_user)
    names = sanitize_list(competitors.split(",")) if competitors else None

    try:
        series = get_historical_data(
            db,
            project.id,
            keyword=keyword,
            time_range=time_range,
            competitors=names,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"project_id": project.id, "time_range": time_range, "series": series}


@app.get("/projects/{project_id}/trends")
def project_trends(
    project_id: str,
    competitor: str,
    keyword: Optional[str] = None,
    time_range: str = "30d",
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    try:
        metrics = calculate_trend_metrics(
            db,
            project.id,
            competitor,
            keyword=keyword,
            time_range=time_range,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"project_id": project.id, "competitor": competitor, "metrics": metrics}


@app.put("/projects/{project_id}/keywords/{keyword_id}/schedule", response_model=ScheduleOut)
def set_keyword_schedule(
    project_id: str,
    keyword_id: str,
    payload: ScheduleRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = get_owned_project(db, project_id, current_user)
    keyword = get_project_keyword(db, project, keyword_id)

    try:
        schedule = setup_tracking_schedule(
            db,
            project.id,
            keyword.id,
            payload.frequency,
            priority=payload.priority,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    db.commit()
    db.refresh(schedule)
    return schedule


# ----- Billing (Stripe) -----

@app.post("/billing/checkout", response_model=UrlResponse)
def billing_checkout(
    payload: CheckoutRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if payload.plan not in PAID_PLANS:
        raise HTTPException(status_code=400, detail="Invalid plan. Choose 'basic' or 'gold'.")

    try:
        url = billing.create_checkout_session(db, current_user, payload.plan)
    except billing.PaymentsNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    except stripe.StripeError as e:
        logger.error("Stripe checkout failed for user %s: %s", current_user.id, e)
        raise HTTPException(status_code=502, detail="Payment provider error. Please try again.")

    return UrlResponse(url=url)


@app.post("/billing/portal", response_model=UrlResponse)
def billing_portal(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        url = billing.create_portal_session(db, current_user)
    except billing.PaymentsNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    except stripe.StripeError as e:
        logger.error("Stripe portal failed for user %s: %s", current_user.id, e)
        raise HTTPException(status_code=502, detail="Payment provider error. Please try again.")

    if not url:
        raise HTTPException(status_code=404, detail="No Stripe customer found for this user")
    return UrlResponse(url=url)


@app.post("/billing/check-subscription")
def billing_check_subscription(
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
    current_user: User = Depends(get_current_user),
):
    try:
        return billing.sync_subscription(db, current_user, profile)
    except billing.PaymentsNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    except stripe.StripeError as e:
        logger.error("Stripe subscription check failed for user %s: %s", current_user.id, e)
        raise HTTPException(status_code=502, detail="Payment provider error. Please try again.")


def _process_stripe_webhook(db: Session, payload: bytes, sig_header: Optional[str]) -> dict:
    try:
        event = billing.construct_event(payload, sig_header)
    except billing.PaymentsNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    outcome = billing.handle_webhook_event(db, event)
    logger.info("Stripe webhook %s: %s", event["type"], outcome)
    return {"received": True, "result": outcome}


@app.post("/billing/webhook")
async def billing_webhook(request: Request, db: Session = Depends(get_db)):
    # signature is computed over the raw body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await run_in_threadpool(_process_stripe_webhook, db, payload, sig_header)


# ----- AI analysis -----

@app.post("/ai-analysis")
def ai_analysis(
    payload: AIAnalysisRequest,
    current_user: User = Depends(get_current_user),
):
    if not ai_rate_limiter.allow(current_user.id):
        raise HTTPException(
            status_code=429,
            detail="Too many analysis requests. Please wait a minute and try again.",
        )

    try:
        text = run_ai_analysis(
            prompt=payload.prompt,
            analysis_type=payload.type,
            max_tokens=payload.max_tokens,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.error("AI analysis failed for user %s: %s", current_user.id, e)
        raise HTTPException(status_code=502, detail=f"Error running AI analysis: {e}")

    if not text.strip():
        raise HTTPException(status_code=502, detail="AI returned an empty response")

    return {"analysis": text}

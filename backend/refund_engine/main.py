"""
Refund Adjudication Engine - FastAPI Application

Main entry point for the refund adjudication backend.

Pipeline:
- Received → Acknowledged → L1 screening (eligibility + AML, concurrently)
- L1 → L2 manual review → L3 committee → final-authority sign-off
- Disbursing → Approved, with SLA-driven delay interest
- Frozen on suspicious screening until compliance clearance
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import auth_router, refunds_router, reviews_router, scheduler_router
from .database import init_db
from .services.adjudication.retry import abandoned_calls


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Refund Adjudication Engine",
    description="""
    Refund Adjudication Engine - Refund Request Verification and Disbursement

    Takes a refund request from submission to a terminal disposition through
    three review tiers, with AML screening interleaved.

    ## Pipeline
    1. **L1 (automated)**: limitation window, duplicates, mandatory evidence, eligibility rules, AML screening
    2. **L2 (manual)**: document authenticity, deductions, approve / reject / escalate
    3. **L3 (committee)**: Finance, Compliance and Legal vote; named-approver sign-off above the final-authority threshold
    4. **Disbursement**: payout to the verified source account within the value-band SLA

    ## Key Principles
    - Every transition appends an immutable audit record
    - Decision records are never mutated; corrections are amendments
    - Suspicious screenings freeze the request and are never shown to stakeholders
    - Infrastructure failures park the request for an operator; they never reject it
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(refunds_router)
app.include_router(reviews_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Refund Adjudication Engine",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0", "abandoned_collaborator_calls": abandoned_calls()}


# For running with: python -m refund_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)

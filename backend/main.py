from fastapi import FastAPI
import uvicorn
from fastapi.middleware.cors import CORSMiddleware
from db.database import create_db_and_tables
from routers.bootstrap import router as bootstrap_router
from routers.categories import router as categories_router
from routers.drink_issues import router as drink_issues_router
from routers.events import router as events_router
from routers.ingredients import router as ingredients_router
from routers.inventory import router as inventory_router
from routers.recipes import router as recipes_router
from routers.session_types import router as session_types_router
from routers.sessions import router as sessions_router
from routers.variants import router as variants_router
from routers.venues import router as venues_router
from core.auth import fastapi_users, auth_backend
from core.config import settings
from core.logging_config import configure_logging
from contextlib import asynccontextmanager
from schemas.users import UserRead, UserCreate, UserUpdate


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await create_db_and_tables()
    yield


app = FastAPI(
    title="Open Bar API",
    description="Open-bar sessions, drink issuance and the inventory ledger behind them",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Authentication routes (fastapi-users)
app.include_router(fastapi_users.get_auth_router(auth_backend), prefix="/auth/jwt", tags=["auth"],)
app.include_router(fastapi_users.get_register_router(UserRead, UserCreate), prefix="/auth", tags=["auth"])
app.include_router(fastapi_users.get_users_router(UserRead, UserUpdate), prefix="/users", tags=["users"])

# Catalog
app.include_router(categories_router, prefix="/open-bar/ingredient-categories", tags=["catalog"])
app.include_router(ingredients_router, prefix="/open-bar/ingredients", tags=["catalog"])
app.include_router(variants_router, prefix="/open-bar/ingredient-variants", tags=["catalog"])
app.include_router(recipes_router, prefix="/open-bar/recipes", tags=["catalog"])
app.include_router(session_types_router, prefix="/open-bar/session-types", tags=["catalog"])
app.include_router(venues_router, prefix="/open-bar/venues", tags=["catalog"])

# Ledger (deliveries, adjustments, movements)
app.include_router(inventory_router, prefix="/open-bar", tags=["inventory"])

# Service
app.include_router(sessions_router, prefix="/open-bar/sessions", tags=["sessions"])
app.include_router(drink_issues_router, prefix="/open-bar/drink-issues", tags=["drink-issues"])
app.include_router(bootstrap_router, prefix="/open-bar", tags=["bootstrap"])
app.include_router(events_router, prefix="/open-bar", tags=["events"])

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)

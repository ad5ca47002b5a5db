from collections.abc import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from core.config import settings

DATABASE_URL = settings.database_url


class Base(DeclarativeBase):
    pass


engine = create_async_engine(DATABASE_URL, echo=settings.database_echo)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def create_db_and_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


# Models are imported after Base so `from db.database import X` works for
# every table and metadata.create_all sees all of them.
from .users import User  # noqa: E402,F401
from .ingredient_category import IngredientCategory  # noqa: E402,F401
from .ingredient import Ingredient  # noqa: E402,F401
from .ingredient_variant import IngredientVariant  # noqa: E402,F401
from .recipe import Recipe  # noqa: E402,F401
from .recipe_line import RecipeLine  # noqa: E402,F401
from .venue import Venue  # noqa: E402,F401
from .session_type import SessionType  # noqa: E402,F401
from .bar_session import OpenBarSession, SessionMember  # noqa: E402,F401
from .drink_issue import DrinkIssue  # noqa: E402,F401
from .delivery import Delivery, DeliveryItem  # noqa: E402,F401
from .inventory.movement import InventoryMovement  # noqa: E402,F401

"""Base repository with common CRUD operations."""

from collections.abc import Sequence
from typing import Any, TypeVar

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from ..exceptions.domain import EntityNotFoundError

ModelT = TypeVar("ModelT", bound=SQLModel)
type FilterValueT = str | int | float | None


class BaseRepository[ModelT: SQLModel]:
    """Base repository providing common database operations.

    ``create`` and ``update`` commit. ``add`` only flushes, so services can
    group several writes into one transaction and commit themselves.
    """

    def __init__(self, session: AsyncSession, model_class: type[ModelT]):
        """Initialize repository with session and model class.

        Args:
            session: Database session
            model_class: SQLModel class this repository operates on
        """
        self.session = session
        self.model_class = model_class

    def _filtered(self, statement: Any, filters: dict[str, FilterValueT]) -> Any:
        for field, value in filters.items():
            if hasattr(self.model_class, field):
                statement = statement.where(getattr(self.model_class, field) == value)
        return statement

    async def get(self, id: Any) -> ModelT:
        """Get entity by ID or raise EntityNotFoundError.

        Args:
            id: Entity ID

        Returns:
            Found entity

        Raises:
            EntityNotFoundError: If entity doesn't exist
        """
        entity = await self.session.get(self.model_class, id)
        if not entity:
            raise EntityNotFoundError(f"{self.model_class.__name__} with ID {id} not found")
        return entity

    async def get_by(self, **filters: FilterValueT) -> ModelT | None:
        """Get single entity by filters.

        Args:
            **filters: Field-value pairs to filter by

        Returns:
            Found entity or None
        """
        statement = self._filtered(select(self.model_class), filters)
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def exists(self, **filters: FilterValueT) -> bool:
        """Check if entity exists with given filters."""
        return await self.count(**filters) > 0

    async def count(self, **filters: FilterValueT) -> int:
        """Count entities matching filters."""
        statement = self._filtered(select(func.count()).select_from(self.model_class), filters)
        result = await self.session.execute(statement)
        return result.scalar() or 0

    async def create(self, entity: ModelT) -> ModelT:
        """Create new entity and commit.

        Args:
            entity: Entity to create

        Returns:
            Created entity with refreshed data
        """
        self.session.add(entity)
        await self.session.commit()
        await self.session.refresh(entity)
        return entity

    async def add(self, entity: ModelT) -> ModelT:
        """Stage an entity in the current transaction and flush it.

        Args:
            entity: Entity to add

        Returns:
            The entity, with database-generated fields populated
        """
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def update(self, entity: ModelT, update_data: dict[str, Any]) -> ModelT:
        """Update entity with given data and commit.

        Args:
            entity: Entity to update
            update_data: Dictionary with fields to update

        Returns:
            Updated entity
        """
        for field, value in update_data.items():
            if hasattr(entity, field):
                setattr(entity, field, value)

        await self.session.commit()
        await self.session.refresh(entity)
        return entity

    async def refresh(self, entity: ModelT) -> ModelT:
        """Refresh entity from database."""
        await self.session.refresh(entity)
        return entity

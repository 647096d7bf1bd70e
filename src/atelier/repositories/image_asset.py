"""ImageAsset repository for stored artifacts."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.image_asset import ImageAsset, ImageKind


class ImageAssetRepository:
    """Repository for ImageAsset entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, asset_id: UUID) -> ImageAsset | None:
        result = await self.session.execute(
            select(ImageAsset).where(ImageAsset.id == asset_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_many(self, asset_ids: list[UUID]) -> list[ImageAsset]:
        """Retrieve assets by id, preserving the order of ``asset_ids``.

        Unknown ids are skipped.
        """
        if not asset_ids:
            return []
        result = await self.session.execute(
            select(ImageAsset).where(ImageAsset.id.in_(asset_ids))  # type: ignore[attr-defined]
        )
        by_id = {asset.id: asset for asset in result.scalars().all()}
        return [by_id[asset_id] for asset_id in asset_ids if asset_id in by_id]

    async def add(self, asset: ImageAsset) -> ImageAsset:
        """Persist new asset.

        Args:
            asset: ImageAsset entity to persist

        Returns:
            Persisted asset with generated ID
        """
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def get_outputs_for_job(self, job_id: UUID) -> list[ImageAsset]:
        """Retrieve primary output assets recorded for a job."""
        result = await self.session.execute(
            select(ImageAsset)
            .where(ImageAsset.job_id == job_id)  # type: ignore[arg-type]
            .where(ImageAsset.kind == ImageKind.OUTPUT)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())

    async def get_thumbnails(self, original_image_id: UUID) -> list[ImageAsset]:
        """Retrieve thumbnails derived from an output asset, largest first."""
        result = await self.session.execute(
            select(ImageAsset)
            .where(ImageAsset.original_image_id == original_image_id)  # type: ignore[arg-type]
            .where(ImageAsset.kind == ImageKind.THUMBNAIL)  # type: ignore[arg-type]
            .order_by(ImageAsset.width.desc())  # type: ignore[union-attr]
        )
        return list(result.scalars().all())

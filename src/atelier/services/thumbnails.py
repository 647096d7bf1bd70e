"""Best-effort thumbnail fan-out after a job succeeds.

The resize itself is delegated to a ``Thumbnailer``; this module only drives it per
configured size, stores the results and records them as thumbnail assets. A failure
for one size is logged and skipped. The parent job stays succeeded whatever happens here.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from atelier.models.image_asset import ImageAsset, ImageKind
from atelier.services.storage.object_storage import ObjectStorage
from atelier.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Thumbnail:
    """A scaled rendition produced by a Thumbnailer."""

    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"


class Thumbnailer(Protocol):
    """Scale an image to fit inside a ``size`` x ``size`` box."""

    async def render(self, data: bytes, mime_type: str, size: int) -> Thumbnail: ...


def thumbnail_key(asset: ImageAsset, size: int) -> str:
    return f"thumbnails/{asset.user_id}/{size}/{asset.id}.jpg"


class ThumbnailFanout:
    """Derive, upload and record one thumbnail per configured size.

    Args:
        uow_factory: Factory producing UnitOfWork instances
        storage: Object storage for the renditions
        thumbnailer: Resize implementation; None disables the fan-out
        sizes: Target box sizes in pixels
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        storage: ObjectStorage,
        thumbnailer: Optional[Thumbnailer],
        sizes: list[int],
    ):
        self.uow_factory = uow_factory
        self.storage = storage
        self.thumbnailer = thumbnailer
        self.sizes = sizes

    @property
    def enabled(self) -> bool:
        return self.thumbnailer is not None and bool(self.sizes)

    async def run(self, output: ImageAsset, data: Optional[bytes] = None) -> list[ImageAsset]:
        """Create thumbnails for a primary output asset.

        Args:
            output: The job's primary output asset
            data: Output bytes if already in memory (read from storage otherwise)

        Returns:
            Thumbnail assets that were created (possibly empty); never raises
        """
        if not self.enabled:
            logger.debug("thumbnails.skipped", output_image_id=str(output.id))
            return []

        if data is None:
            try:
                data = await self.storage.get_object(output.storage_key)
            except Exception as e:
                logger.warning(
                    "thumbnails.source.unavailable",
                    output_image_id=str(output.id),
                    error=str(e),
                )
                return []

        created: list[ImageAsset] = []
        for size in self.sizes:
            try:
                created.append(await self._render_one(self.thumbnailer, output, data, size))
            except Exception as e:
                logger.warning(
                    "thumbnails.size.failed",
                    output_image_id=str(output.id),
                    job_id=str(output.job_id),
                    size=size,
                    error_type=type(e).__name__,
                    error=str(e),
                )

        logger.info(
            "thumbnails.generated",
            output_image_id=str(output.id),
            requested=len(self.sizes),
            created=len(created),
        )
        return created

    async def _render_one(
        self, thumbnailer: Thumbnailer, output: ImageAsset, data: bytes, size: int
    ) -> ImageAsset:
        thumb = await thumbnailer.render(data, output.mime_type, size)
        key = thumbnail_key(output, size)
        await self.storage.put_object(thumb.data, key, thumb.mime_type)
        url = await self.storage.get_download_url(key, 86400)

        async with await self.uow_factory() as uow:
            asset = await uow.images.add(
                ImageAsset(
                    kind=ImageKind.THUMBNAIL,
                    user_id=output.user_id,
                    job_id=output.job_id,
                    storage_key=key,
                    url=url,
                    mime_type=thumb.mime_type,
                    size_bytes=len(thumb.data),
                    width=thumb.width,
                    height=thumb.height,
                    original_image_id=output.id,
                    details={"size": size},
                )
            )
        logger.debug("thumbnails.size.created", output_image_id=str(output.id), size=size)
        return asset

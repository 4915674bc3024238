"""Publishing a whole build output.

After the dispatcher has produced ``artifact -> images``, every artifact
gets the image matching the requested platform pushed to
``<repository>/<artifact>:<tag>``. Artifacts are published concurrently and
independently: a failure aborts only the artifact it belongs to.

Example:
    >>> results = await publish_artifacts(
    ...     publisher, output, progress,
    ...     repository="registry.example/org", tag="v1", platform="linux/amd64",
    ... )
    >>> BuildsFile.from_references({name: r.reference for name, r in results.items()})
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog

from steiger_core.errors import NoMatchingImageError, PublishFailedError
from steiger_core.schemas.oci import Platform

if TYPE_CHECKING:
    from steiger_core.builders import BuildOutput
    from steiger_core.image import Image
    from steiger_core.oci.publisher import PushResult, RegistryPublisher
    from steiger_core.progress import Progress, ProgressTree

logger = structlog.get_logger(__name__)


def select_image(artifact: str, images: Sequence[Image], platform: str) -> Image:
    """Pick the image to publish for ``platform``.

    An image tagged with a matching platform wins; otherwise a single
    platform-independent image is used.

    Raises:
        NoMatchingImageError: If no image fits.
    """
    wanted = Platform.parse(platform)
    for image in images:
        if image.platform is not None and image.platform.matches(wanted):
            return image

    untagged = [image for image in images if image.platform is None]
    if len(untagged) == 1:
        return untagged[0]

    available = [str(image.platform) for image in images if image.platform is not None]
    raise NoMatchingImageError(artifact, platform, available)


async def _publish_one(
    publisher: RegistryPublisher,
    progress: Progress,
    artifact: str,
    images: Sequence[Image],
    *,
    repository: str,
    tag: str,
    platform: str,
) -> PushResult:
    try:
        image = select_image(artifact, images, platform)
        return await publisher.publish(progress, repository, artifact, tag, image)
    except Exception as e:
        progress.fail(str(e))
        raise


async def publish_artifacts(
    publisher: RegistryPublisher,
    output: BuildOutput,
    progress: ProgressTree,
    *,
    repository: str,
    tag: str,
    platform: str,
) -> dict[str, PushResult]:
    """Publish every artifact of a build output concurrently.

    Returns:
        Artifact name to push result.

    Raises:
        PublishFailedError: If any artifact failed, after all of them finished.
            Carries every failure and the results of the successful ones.
    """
    push_progress = progress.add_child("push")
    names = sorted(output.artifacts)
    results = await asyncio.gather(
        *(
            _publish_one(
                publisher,
                push_progress.add_child(name),
                name,
                output.artifacts[name],
                repository=repository,
                tag=tag,
                platform=platform,
            )
            for name in names
        ),
        return_exceptions=True,
    )

    published: dict[str, PushResult] = {}
    failures: dict[str, BaseException] = {}
    for name, result in zip(names, results):
        if isinstance(result, Exception):
            failures[name] = result
        elif isinstance(result, BaseException):
            raise result
        else:
            published[name] = result

    if failures:
        logger.error("publish_failed", failed=sorted(failures), published=sorted(published))
        raise PublishFailedError(failures, published)

    logger.info("publish_completed", artifacts=len(published), repository=repository, tag=tag)
    return published


__all__ = ["publish_artifacts", "select_image"]

"""Choose which titles to rip from a scanned disc."""

import logging

from mkvauto.disc.parser import Title

logger = logging.getLogger(__name__)


def select_titles(
    titles: list[Title],
    movie_threshold: int,
    episode_threshold: int,
) -> list[Title]:
    """Select titles by duration (thresholds in seconds).

    Movie mode: if any title reaches the movie threshold, only the longest
    title is ripped; the first of several equally long titles wins.

    Episode mode: otherwise every title reaching the episode threshold is
    ripped, in scan order.

    An empty result means the operator has to pick titles manually.
    """
    if not titles:
        return []

    longest = titles[0]
    for title in titles[1:]:
        if title.duration > longest.duration:
            longest = title

    if longest.duration >= movie_threshold:
        logger.info(f"Movie mode: selected {longest}")
        return [longest]

    selected = [t for t in titles if t.duration >= episode_threshold]
    logger.info(f"Episode mode: selected {len(selected)} of {len(titles)} titles")
    return selected


def select_by_ids(titles: list[Title], title_ids: list[int]) -> list[Title]:
    """Resolve manually chosen ids against the scan, in the order given.

    Unknown ids are skipped.
    """
    by_id = {t.title_id: t for t in titles}
    selected = []
    for title_id in title_ids:
        title = by_id.get(title_id)
        if title is None:
            logger.warning(f"Ignoring unknown title id {title_id}")
            continue
        selected.append(title)
    return selected

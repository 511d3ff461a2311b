"""
foliokit: template helpers for a portfolio static site.

Querying works by tag, technology, year and completion status, picking
thumbnail variants, and placing laid-out media on the content grid.

Usage:
    env = make_environment(Portfolio.from_dict(data))
    env.from_string("{{ works|tagged('music')|most_recents_first }}")

Everything here is a pure query over a snapshot loaded elsewhere.
"""

import json
import logging
import pprint
import re
from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import date, datetime

from jinja2 import Environment
from markupsafe import Markup

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

MEDIA_BASE_URL = "https://media.ewen.works/"
ASSETS_BASE_URL = "https://assets.ewen.works/"
MEDIA_OUTPUT_PREFIX = "dist/media/"
SUMMARY_MAX_WORDS = 150

TRANSLATION_STRING_DELIMITER_OPEN = "<i18n>"
TRANSLATION_STRING_DELIMITER_CLOSE = "</i18n>"

# Year reported for works whose creation date is unknown.
UNKNOWN_YEAR = 0

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class FolioError(Exception):
    """Base class for content-authoring errors raised while rendering."""


class NotFoundError(FolioError, LookupError):
    def __init__(self, kind: str, name: str):
        super().__init__(kind, name)
        self.kind = kind
        self.name = name

    def __str__(self):
        return f"No {self.kind} found for {self.name!r}, be sure to register it in the {self.kind} data."


class AmbiguousNameError(FolioError, LookupError):
    def __init__(self, kind: str, name: str, matches: list):
        super().__init__(kind, name, matches)
        self.kind = kind
        self.name = name
        self.matches = matches

    def __str__(self):
        return f"{self.name!r} refers to several {self.kind} entries: {', '.join(map(str, self.matches))}"


class MalformedGridArea(FolioError):
    def __init__(self, positions):
        super().__init__(positions)
        self.positions = positions

    def __str__(self):
        return f"A grid area has positions {self.positions!r} with a row not made of exactly 2 elements"


class NoThumbnailsAvailable(FolioError):
    def __init__(self, work_id: str, key: str, alternatives: list[str]):
        super().__init__(work_id, key, alternatives)
        self.work_id = work_id
        self.key = key
        self.alternatives = alternatives

    def __str__(self):
        return (
            f"No thumbnails available for {self.key}.\n"
            f"Available thumbnails for work {self.work_id}: {', '.join(self.alternatives)}"
        )


class NoThumbnailAtSize(FolioError):
    def __init__(self, key: str, resolution, available: list):
        super().__init__(key, resolution, available)
        self.key = key
        self.resolution = resolution
        self.available = available

    def __str__(self):
        return (
            f"No thumbnail at size {self.resolution} for {self.key}.\n"
            f"Available resolutions for {self.key} (in px): {', '.join(map(str, self.available))}"
        )


class SummarizeError(FolioError):
    def __init__(self, work: "Work"):
        super().__init__(work)
        self.work = work

    def __str__(self):
        return f"Could not summarize work {self.work.id}: {self.work!r}"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

_URL_UNSAFE = re.compile(r'\s|[#%><"]')


def _strings(raw) -> tuple[str, ...]:
    return tuple(raw or ())


def _resolution(raw):
    """Thumbnail keys come from JSON objects, so "400" means 400."""
    value = float(raw)
    return int(value) if value.is_integer() else value


@dataclass(frozen=True)
class Tag:
    singular: str
    plural: str
    aliases: tuple[str, ...] = ()
    description: str = ""
    learn_more_url: str = ""

    @property
    def url_name(self) -> str:
        return _URL_UNSAFE.sub("-", self.plural)

    def names(self) -> tuple[str, ...]:
        return (self.plural, self.singular, self.url_name, *self.aliases)

    def __str__(self):
        return self.singular

    @classmethod
    def from_dict(cls, data: dict) -> "Tag":
        return cls(
            singular=data["Singular"],
            plural=data["Plural"],
            aliases=_strings(data.get("Aliases")),
            description=data.get("Description", ""),
            learn_more_url=data.get("LearnMoreURL", ""),
        )


@dataclass(frozen=True)
class Technology:
    url_name: str
    display_name: str
    aliases: tuple[str, ...] = ()
    author: str = ""
    learn_more_url: str = ""
    description: str = ""

    def names(self) -> tuple[str, ...]:
        return (self.url_name, self.display_name, *self.aliases)

    def __str__(self):
        return self.url_name

    @classmethod
    def from_dict(cls, data: dict) -> "Technology":
        return cls(
            url_name=data["URLName"],
            display_name=data["DisplayName"],
            aliases=_strings(data.get("Aliases")),
            author=data.get("Author", ""),
            learn_more_url=data.get("LearnMoreURL", ""),
            description=data.get("Description", ""),
        )


@dataclass(frozen=True)
class Colors:
    primary: str = ""
    secondary: str = ""
    tertiary: str = ""


@dataclass(frozen=True)
class WorkMetadata:
    tags: tuple[str, ...] = ()
    made_with: tuple[str, ...] = ()
    created: str = ""
    finished: str = ""
    started: str = ""
    wip: bool = False
    colors: Colors = field(default_factory=Colors)
    thumbnail: str = ""
    summary: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "WorkMetadata":
        colors = data.get("Colors") or {}
        return cls(
            tags=_strings(data.get("Tags")),
            made_with=_strings(data.get("MadeWith")),
            created=data.get("Created") or "",
            finished=data.get("Finished") or "",
            started=data.get("Started") or "",
            wip=bool(data.get("WIP")),
            colors=Colors(
                primary=colors.get("Primary") or "",
                secondary=colors.get("Secondary") or "",
                tertiary=colors.get("Tertiary") or "",
            ),
            thumbnail=data.get("Thumbnail") or "",
            summary=data.get("Summary") or "",
        )


@dataclass(frozen=True)
class MediaAsset:
    path: str
    thumbnails: dict = field(default_factory=dict, hash=False)
    source: str = ""

    def __post_init__(self):
        if not self.source:
            object.__setattr__(self, "source", self.path)

    @classmethod
    def from_dict(cls, data: dict) -> "MediaAsset":
        thumbnails = {_resolution(k): v for k, v in (data.get("Thumbnails") or {}).items()}
        return cls(path=data["Path"], thumbnails=thumbnails, source=data.get("Source") or "")


@dataclass(frozen=True)
class Paragraph:
    content: str


@dataclass(frozen=True)
class Work:
    id: str
    metadata: WorkMetadata = field(default_factory=WorkMetadata)
    media: tuple[MediaAsset, ...] = ()
    paragraphs: tuple[Paragraph, ...] = ()

    def __str__(self):
        return self.id

    @classmethod
    def from_dict(cls, data: dict) -> "Work":
        return cls(
            id=data["ID"],
            metadata=WorkMetadata.from_dict(data.get("Metadata") or {}),
            media=tuple(MediaAsset.from_dict(m) for m in data.get("Media") or ()),
            paragraphs=tuple(Paragraph(p.get("Content", "")) for p in data.get("Paragraphs") or ()),
        )


@dataclass(frozen=True)
class LaidOutElement:
    path: str
    positions: tuple
    layout_index: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "LaidOutElement":
        return cls(
            path=data.get("Path", ""),
            positions=tuple(tuple(row) for row in data.get("Positions") or ()),
            layout_index=data.get("LayoutIndex", 0),
        )


@dataclass(frozen=True)
class Collection:
    id: str
    works: tuple[Work, ...] = ()


@dataclass(frozen=True)
class Portfolio:
    """The read-only snapshot every helper queries."""

    works: tuple[Work, ...] = ()
    tags: tuple[Tag, ...] = ()
    technologies: tuple[Technology, ...] = ()
    collections: tuple[Collection, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "Portfolio":
        """Build from the loader's parsed JSON; collections list work IDs."""
        works = tuple(Work.from_dict(w) for w in data.get("Works") or ())
        by_id = {w.id: w for w in works}
        collections = []
        for c in data.get("Collections") or ():
            members = []
            for wid in c.get("Works") or ():
                if wid not in by_id:
                    logger.warning("Collection %s refers to unknown work %r, ignoring it", c["ID"], wid)
                    continue
                members.append(by_id[wid])
            collections.append(Collection(id=c["ID"], works=tuple(members)))
        return cls(
            works=works,
            tags=tuple(Tag.from_dict(t) for t in data.get("Tags") or ()),
            technologies=tuple(Technology.from_dict(t) for t in data.get("Technologies") or ()),
            collections=tuple(collections),
        )


# ---------------------------------------------------------------------------
# Tag & technology lookup
# ---------------------------------------------------------------------------


class AliasIndex:
    """Case-insensitive lookup of tags and technologies by any of their names."""

    KINDS = ("tag", "technology")

    def __init__(self, tags=(), technologies=()):
        self._names = {kind: {} for kind in self.KINDS}
        for tag in tags:
            self._register("tag", tag)
        for tech in technologies:
            self._register("technology", tech)

    def _register(self, kind: str, entity):
        for name in entity.names():
            matches = self._names[kind].setdefault(name.lower(), [])
            if not any(m is entity for m in matches):
                matches.append(entity)

    def find(self, kind: str, name: str):
        """Like lookup, but returns None for unknown names."""
        if kind not in self._names:
            raise ValueError(f"Unknown kind {kind!r}, expected one of {', '.join(self.KINDS)}")
        matches = self._names[kind].get(name.lower(), [])
        if len(matches) > 1:
            raise AmbiguousNameError(kind, name, matches)
        return matches[0] if matches else None

    def lookup(self, kind: str, name: str):
        entity = self.find(kind, name)
        if entity is None:
            raise NotFoundError(kind, name)
        return entity

    def find_tag(self, name: str) -> Tag | None:
        return self.find("tag", name)

    def find_tech(self, name: str) -> Technology | None:
        return self.find("technology", name)

    def lookup_tag(self, name: str) -> Tag:
        return self.lookup("tag", name)

    def lookup_tech(self, name: str) -> Technology:
        return self.lookup("technology", name)


# ---------------------------------------------------------------------------
# Work queries
# ---------------------------------------------------------------------------

_PARTIAL_DATE = re.compile(r"^(\d{4})(?:-(\d{1,2}))?(?:-(\d{1,2}))?$")


def parse_creation_date(raw: str) -> date | None:
    """Parse an ISO date, None when unknown.

    "????" as the year means unknown, any other "?" reads as 1.
    """
    if not raw or raw.startswith("????"):
        return None
    text = raw.replace("?", "1")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    m = _PARTIAL_DATE.match(text)
    try:
        if m:
            year, month, day = m.groups()
            return date(int(year), int(month or 1), int(day or 1))
        return datetime.fromisoformat(text).date()
    except ValueError:
        logger.warning("Unparseable creation date %r, treating it as unknown", raw)
        return None


def created_at(work: Work) -> date | None:
    return parse_creation_date(work.metadata.created or work.metadata.finished)


def _recency(work: Work) -> tuple:
    # unknown dates sort below every known one
    created = created_at(work)
    return (created is not None, created or date.min)


def created_year(work: Work) -> int:
    created = created_at(work)
    return UNKNOWN_YEAR if created is None else created.year


def is_wip(work: Work) -> bool:
    # Started but never finished counts as in progress.
    return work.metadata.wip or (bool(work.metadata.started) and created_at(work) is None)


def with_wip_status(status: bool, works) -> list[Work]:
    return [w for w in works if is_wip(w) == status]


def finished(works) -> list[Work]:
    return with_wip_status(False, works)


def unfinished(works) -> list[Work]:
    return with_wip_status(True, works)


def with_created_year(works, year: int) -> list[Work]:
    return [w for w in works if created_year(w) == year]


def excluding(exclude_list, works) -> list[Work]:
    """Drop works whose ID appears in exclude_list."""
    excluded = {w.id for w in exclude_list}
    return [w for w in works if w.id not in excluded]


def most_recents_first(works) -> list[Work]:
    # sorted() stays stable with reverse=True: ties keep input order
    return sorted(works, key=_recency, reverse=True)


def latest_work(works) -> Work | None:
    works = list(works)
    if not works:
        return None
    return max(works, key=_recency)


def years_of_works(works) -> set[int]:
    return {created_year(w) for w in works}


class WorkQuery:
    """Tag and technology filters, resolved through an AliasIndex."""

    def __init__(self, index: AliasIndex):
        self.index = index

    IDENTITY = {"tag": "singular", "technology": "url_name"}

    def _refers_to(self, kind: str, work: Work, names, entity) -> bool:
        identity = self.IDENTITY[kind]
        for name in names:
            try:
                resolved = self.index.find(kind, name)
            except AmbiguousNameError as e:
                logger.warning("Work %s: %s, ignoring it", work.id, e)
                continue
            if resolved is None:
                logger.warning("Work %s refers to unknown %s %r, ignoring it", work.id, kind, name)
                continue
            if getattr(resolved, identity) == getattr(entity, identity):
                return True
        return False

    def with_tag(self, works, *tags) -> list[Work]:
        """Keep works tagged with every one of tags (Tag objects or names)."""
        output = list(works)
        for tag in tags:
            if isinstance(tag, str):
                tag = self.index.lookup_tag(tag)
            output = [w for w in output if self._refers_to("tag", w, w.metadata.tags, tag)]
            logger.debug("with_tag(%s): %d works left", tag.singular, len(output))
        return output

    def with_tech(self, works, *techs) -> list[Work]:
        """Keep works made with every one of techs (Technology objects or names)."""
        output = list(works)
        for tech in techs:
            if isinstance(tech, str):
                tech = self.index.lookup_tech(tech)
            output = [w for w in output if self._refers_to("technology", w, w.metadata.made_with, tech)]
            logger.debug("with_tech(%s): %d works left", tech.url_name, len(output))
        return output


# ---------------------------------------------------------------------------
# Thumbnails
# ---------------------------------------------------------------------------


def closest_resolution(target, available):
    """Pick the available resolution best suited to display at target.

    An exact match wins, then the next size up. Past the largest size,
    the largest is returned.
    """
    ordered = sorted(set(available))
    if not ordered:
        raise ValueError("no resolutions available to choose from")
    i = bisect_left(ordered, target)
    if i < len(ordered):
        return ordered[i]
    return ordered[-1]


def media_url(path: str) -> str:
    """Default media rewriter: serve build-relative paths from MEDIA_BASE_URL."""
    return MEDIA_BASE_URL + path.replace("#", "sharp").lstrip("/")


def asset_url(path: str) -> str:
    """URL of a static site asset (icons, fonts), served from ASSETS_BASE_URL."""
    return ASSETS_BASE_URL + path.replace("#", "sharp").lstrip("/")


class ThumbnailResolver:
    def __init__(self, media=media_url, output_prefix: str = MEDIA_OUTPUT_PREFIX):
        self.media = media
        self.output_prefix = output_prefix

    def thumbnail_key(self, subject) -> str | None:
        """Path of the media to use as the thumbnail of a work or laid-out element."""
        if isinstance(subject, LaidOutElement):
            return subject.path
        wanted = subject.metadata.thumbnail
        if wanted:
            for asset in subject.media:
                if wanted in (asset.source, asset.path):
                    return asset.path
            return None
        if subject.media:
            return subject.media[0].path
        return None

    def _asset(self, work: Work, key: str) -> MediaAsset | None:
        for asset in work.media:
            if asset.path == key:
                return asset
        return None

    def available_resolutions(self, work: Work, key: str) -> list:
        asset = self._asset(work, key)
        return sorted(asset.thumbnails) if asset else []

    def source(self, work: Work, resolution, key: str | None = None) -> str:
        """URL of the thumbnail variant of key best matching resolution."""
        if key is None:
            key = self.thumbnail_key(work)
        if not key:
            return ""
        available = self.available_resolutions(work, key)
        if not available:
            alternatives = [m.path for m in work.media if m.thumbnails]
            raise NoThumbnailsAvailable(work.id, key, alternatives)
        resolution = closest_resolution(resolution, available)
        variant = self._asset(work, key).thumbnails.get(resolution)
        if resolution > 0 and variant:
            if variant.startswith(self.output_prefix):
                variant = variant[len(self.output_prefix):]
            return self.media(variant)
        raise NoThumbnailAtSize(key, resolution, available)

    def source_set(self, work: Work, key: str | None = None) -> str:
        """srcset value listing every variant of key, smallest first."""
        if key is None:
            key = self.thumbnail_key(work)
        if not key:
            return ""
        return ",".join(
            f"{self.source(work, resolution, key)} {resolution}w"
            for resolution in self.available_resolutions(work, key)
        )


# ---------------------------------------------------------------------------
# Layout grid
# ---------------------------------------------------------------------------


def position_bounds(element: LaidOutElement) -> tuple[int, int, int, int]:
    """Returns (starting row, ending row, starting column, ending column), 0-indexed and inclusive."""
    positions = element.positions
    if not positions or any(len(row) != 2 for row in positions):
        raise MalformedGridArea(positions)
    rows = [row for row, _ in positions]
    cols = [col for _, col in positions]
    return min(rows), max(rows), min(cols), max(cols)


def cell_css(element: LaidOutElement) -> Markup:
    """CSS declaring the element's area in the content grid."""
    start_row, end_row, start_col, end_col = position_bounds(element)
    # CSS grid lines are 1-indexed and the end line sits after the last cell
    return Markup(
        f"grid-row: {start_row + 1} / {end_row + 2}; grid-column: {start_col + 1} / {end_col + 2};"
    )


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------


def ellipsis(text: str, max_words: int) -> str:
    words = text.split(" ")
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + "…"


def summarize(work: Work, max_words: int = SUMMARY_MAX_WORDS) -> str:
    try:
        if work.metadata.summary:
            return work.metadata.summary
        return ellipsis(Markup(work.paragraphs[0].content).striptags(), max_words)
    except Exception as e:
        raise SummarizeError(work) from e


def add_octothorpe_if_needed(value: str) -> str:
    if value in ("white", "black"):
        return value
    return value if value.startswith("#") else f"#{value}"


def colors_map(work: Work) -> dict[str, str]:
    colors = work.metadata.colors
    declared = {"primary": colors.primary, "secondary": colors.secondary, "tertiary": colors.tertiary}
    return {k: add_octothorpe_if_needed(v) for k, v in declared.items() if v}


def colors_css(work: Work) -> Markup:
    """CSS custom properties (--primary etc.) for the work's colors."""
    return Markup(";".join(f"--{k}:{v}" for k, v in colors_map(work).items()))


def is_color_bright(hex_color: str) -> bool:
    value = hex_color.lstrip("#")
    r, g, b = (int(value[i:i + 2], 16) for i in (0, 2, 4))
    return (r * 299 + g * 587 + b * 114) / 1000 > 155


def is_work_in_collection(work: Work, collection: Collection) -> bool:
    return any(w.id == work.id for w in collection.works)


def collections_of_work(work: Work, collections) -> list[Collection]:
    return [c for c in collections if is_work_in_collection(work, c)]


def translate_context(value: str, context: str, *args) -> str:
    """Placeholder resolved by the translation step once the page is rendered."""
    payload = json.dumps({"value": value, "args": list(args), "context": context})
    return TRANSLATION_STRING_DELIMITER_OPEN + payload + TRANSLATION_STRING_DELIMITER_CLOSE


def translate(value: str, *args) -> str:
    return translate_context(value, "", *args)


def log(obj) -> str:
    logger.info("%s", pprint.pformat(obj))
    return f"logged {obj!s} to the build log"


# ---------------------------------------------------------------------------
# Template registration
# ---------------------------------------------------------------------------


def register_helpers(env: Environment, portfolio: Portfolio, media=media_url, asset=asset_url) -> Environment:
    """Expose the helpers to templates rendered by env, bound to portfolio."""
    index = AliasIndex(portfolio.tags, portfolio.technologies)
    query = WorkQuery(index)
    thumbnails = ThumbnailResolver(media=media)

    env.globals.update(
        all_works=portfolio.works,
        all_tags=portfolio.tags,
        all_technologies=portfolio.technologies,
        all_collections=portfolio.collections,
        lookupTag=index.lookup_tag,
        lookupTech=index.lookup_tech,
        withTag=query.with_tag,
        withTech=query.with_tech,
        withWIPStatus=with_wip_status,
        withCreatedYear=with_created_year,
        excluding=excluding,
        tagged=query.with_tag,
        madeWith=query.with_tech,
        createdIn=with_created_year,
        finished=finished,
        unfinished=unfinished,
        latestWork=latest_work,
        yearsOfWorks=years_of_works,
        MostRecentsFirst=most_recents_first,
        CreatedAt=created_at,
        IsWIP=is_wip,
        thumbnailKey=thumbnails.thumbnail_key,
        ThumbnailSource=thumbnails.source,
        ThumbnailSourcesSet=thumbnails.source_set,
        PositionBounds=position_bounds,
        CellCSS=cell_css,
        Summarize=summarize,
        ColorsMap=colors_map,
        ColorsCSS=colors_css,
        IsColorBright=is_color_bright,
        IsWorkInCollection=is_work_in_collection,
        CollectionsOfWork=lambda work: collections_of_work(work, portfolio.collections),
        translate=translate,
        translate_context=translate_context,
        media=media,
        asset=asset,
        log=log,
    )
    env.filters.update(
        tagged=query.with_tag,
        made_with=query.with_tech,
        created_in=with_created_year,
        finished=finished,
        unfinished=unfinished,
        excluding=lambda works, exclude_list: excluding(exclude_list, works),
        most_recents_first=most_recents_first,
        latest=latest_work,
        years_of_works=years_of_works,
        summarize=summarize,
        cell_css=cell_css,
    )
    return env


def make_environment(portfolio: Portfolio, media=media_url, asset=asset_url, **options) -> Environment:
    options.setdefault("autoescape", True)
    return register_helpers(Environment(**options), portfolio, media=media, asset=asset)

"""Field resolution: map user words to actual dataset column names.

Every detector and executor goes through ``resolve_field`` so that downstream
code only ever handles real column names, never raw user tokens.
"""

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from insightvault.planning.schema import DatasetSchema

# Minimum length of the shorter side for fuzzy containment matches.
# Keeps stopwords like "in", "at", "of" from matching inside field names.
MIN_FUZZY_LENGTH = 4

# Natural-language synonym groups. If a field's collapsed name equals any
# member, every member becomes an alias of that field.
SYNONYM_GROUPS: list[tuple[str, ...]] = [
    ("boxoffice", "revenue", "gross", "grossing", "earnings", "box office", "takings", "sales"),
    ("rating", "rated", "score", "stars", "imdb rating", "imdbrating"),
    ("imdb", "imdb score", "imdbscore"),
    ("votes", "vote count", "numvotes", "popularity"),
    ("year", "release year", "releaseyear", "released", "released year"),
    ("runtime", "duration", "length", "minutes", "running time"),
    ("genre", "genres", "category", "categories", "type"),
    ("director", "directed", "directors", "filmmaker"),
    ("price", "cost", "priced"),
    ("age", "aged", "years old"),
    ("country", "nation", "countries"),
    ("budget", "production budget"),
    ("salary", "pay", "wage", "wages", "income"),
    ("quantity", "qty", "units"),
]

_COLLAPSE_RE = re.compile(r"[\s_\-]+")
_SEPARATOR_RE = re.compile(r"[_\-]+")


def collapse(text: str) -> str:
    """Lower-case and remove whitespace, underscores and hyphens."""
    return _COLLAPSE_RE.sub("", text.lower().strip())


# Plurals whose singular ends in "ie" rather than "y"
_IE_PLURALS = frozenset(
    {"movies", "cookies", "calories", "zombies", "rookies", "brownies", "selfies",
     "smoothies", "goalies", "genies", "hippies", "prairies", "sorties"}
)
# Same form in singular and plural
_INVARIANT_PLURALS = frozenset({"series", "species", "news"})


def singularize(word: str) -> str:
    """Naive English singular: genres -> genre, categories -> category, movies -> movie."""
    if word in _INVARIANT_PLURALS:
        return word
    if word in _IE_PLURALS:
        return word[:-1]
    if len(word) > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 3 and word.endswith("s") and not word.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def pluralize(word: str) -> str:
    """Naive English plural: genre -> genres, category -> categories."""
    if word.endswith("y") and len(word) > 2 and word[-2] not in "aeiou":
        return word[:-1] + "ies"
    if word.endswith(("s", "x", "ch", "sh")):
        return word + "es"
    return word + "s"


def build_aliases(fields: list[str]) -> dict[str, str]:
    """
    Build the alias table for a list of field names.

    Field-derived aliases are registered for all fields before any synonym, and
    the first field (in first-seen order) wins a contested key.

    Args:
        fields: Field names in first-seen order

    Returns:
        Mapping of normalized token to field name
    """
    aliases: dict[str, str] = {}

    for field in fields:
        name = field.lower().strip()
        if not name:
            continue
        spaced = " ".join(_SEPARATOR_RE.sub(" ", name).split())
        variants = [
            name,
            collapse(name),
            spaced,
            singularize(name),
            singularize(spaced),
            pluralize(spaced),
        ]
        for variant in variants:
            if variant:
                aliases.setdefault(variant, field)

    for group in SYNONYM_GROUPS:
        members = {collapse(m) for m in group}
        owner = next((f for f in fields if collapse(f) in members), None)
        if owner is None:
            continue
        for member in group:
            aliases.setdefault(member, owner)
            aliases.setdefault(collapse(member), owner)

    return aliases


def resolve_field(token: str, schema: "DatasetSchema") -> str | None:
    """
    Return the best-matching column name for a user-typed word or phrase.

    Steps, in order:
    1. exact alias lookup
    2. alias lookup after stripping whitespace/underscores
    3. fuzzy containment, gated by MIN_FUZZY_LENGTH on the shorter side

    Args:
        token: Word or phrase from the question
        schema: Inferred dataset schema

    Returns:
        Field name, or None if nothing matches
    """
    if not token:
        return None
    t = " ".join(token.lower().split())
    if not t:
        return None

    if t in schema.aliases:
        return schema.aliases[t]

    c = collapse(t)
    if not c:
        return None
    if c in schema.aliases:
        return schema.aliases[c]

    for field in schema.all_fields:
        fc = collapse(field)
        if not fc:
            continue
        if c in fc or fc in c:
            if min(len(c), len(fc)) >= MIN_FUZZY_LENGTH:
                return field

    return None

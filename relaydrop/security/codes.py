"""Human-shareable transfer codes.

A code is a handful of lowercase dictionary words joined by a separator, e.g.
``amber-falcon-river-seven``. The generator only cares about readability;
the minimum length is enforced by :class:`~relaydrop.security.engine.SecurityEngine`.
"""

from __future__ import annotations

import secrets

DEFAULT_SEPARATOR = "-"
DEFAULT_WORD_COUNT = 4

WORDLIST: tuple[str, ...] = (
    "able", "acid", "actor", "alarm", "album", "alpha", "amber", "anchor",
    "angle", "apple", "april", "arch", "arrow", "atlas", "autumn", "badge",
    "baker", "bamboo", "banjo", "barrel", "basil", "beach", "beacon", "berry",
    "bison", "blade", "blanket", "bloom", "border", "bottle", "branch", "bravo",
    "breeze", "brick", "bridge", "bronze", "brook", "bucket", "butter", "cabin",
    "cactus", "camel", "candle", "canyon", "carbon", "cargo", "castle", "cedar",
    "cellar", "chalk", "charlie", "cherry", "chess", "cider", "cinder", "circle",
    "citrus", "clover", "cobalt", "comet", "copper", "coral", "cotton", "cradle",
    "crane", "crystal", "cypress", "dagger", "daisy", "delta", "desert", "dinner",
    "dolphin", "dragon", "drum", "dune", "eagle", "echo", "ember", "engine",
    "falcon", "feather", "fern", "fiddle", "finch", "flint", "forest", "fossil",
    "fox", "frost", "galaxy", "garden", "garnet", "ginger", "glacier", "globe",
    "golf", "granite", "gravel", "harbor", "hazel", "helmet", "heron", "hollow",
    "honey", "hotel", "india", "indigo", "island", "ivory", "jacket", "jade",
    "jasmine", "jelly", "jewel", "juliet", "jungle", "kayak", "kernel", "kettle",
    "kilo", "kite", "lagoon", "lantern", "lava", "lemon", "lilac", "lima",
    "linen", "lizard", "lotus", "magnet", "mango", "maple", "marble", "meadow",
    "melon", "meteor", "mike", "mint", "mirror", "mosaic", "moss", "mountain",
    "nectar", "needle", "nickel", "noble", "north", "nutmeg", "oasis", "ocean",
    "olive", "onyx", "opal", "orange", "orbit", "orchid", "oscar", "otter",
    "oyster", "paddle", "palm", "panda", "paper", "parrot", "pearl", "pebble",
    "pepper", "piano", "pilot", "pine", "planet", "plaza", "polar", "poppy",
    "prism", "pulse", "quartz", "quebec", "quill", "rabbit", "radar", "raven",
    "reef", "ribbon", "ridge", "river", "robin", "rocket", "romeo", "rose",
    "ruby", "saddle", "saffron", "salmon", "sand", "sapphire", "satin", "scarlet",
    "shadow", "shell", "sierra", "silver", "sketch", "slate", "spark", "spruce",
    "summit", "sunset", "swan", "tango", "thistle", "thunder", "tiger", "timber",
    "topaz", "torch", "tulip", "tundra", "turtle", "umber", "unity", "valley",
    "velvet", "violet", "voyage", "walnut", "wander", "water", "willow", "window",
    "winter", "wizard", "yarrow", "yellow", "yogurt", "zebra", "zenith", "zephyr",
)


def generate_code(words: int = DEFAULT_WORD_COUNT, separator: str = DEFAULT_SEPARATOR) -> str:
    """Return a fresh random transfer code."""

    if words <= 0:
        raise ValueError("words must be positive")
    return separator.join(secrets.choice(WORDLIST) for _ in range(words))


def normalize_code(raw: str) -> str:
    """Trim and lowercase a code typed by the user."""

    return "-".join(part for part in raw.strip().lower().replace(" ", "-").split("-") if part)

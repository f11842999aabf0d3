from __future__ import annotations

import secrets

from stackctl.config.model import Stack, UnitDefinition

_ADJECTIVES = [
    "amber", "brisk", "calm", "dusty", "eager", "fuzzy", "gentle", "hollow",
    "icy", "jolly", "keen", "lucky", "mellow", "nimble", "olive", "proud",
    "quiet", "rapid", "sunny", "tidy", "urban", "vivid", "witty", "young",
]
_NOUNS = [
    "anchor", "badger", "cedar", "delta", "ember", "falcon", "garden", "harbor",
    "island", "jasper", "kettle", "lantern", "meadow", "nebula", "orchid", "pebble",
    "quarry", "river", "summit", "thistle", "valley", "willow", "yarrow", "zephyr",
]


def generate_release_name() -> str:
    return "-".join(
        [secrets.choice(_ADJECTIVES), secrets.choice(_NOUNS), secrets.token_hex(2)]
    )


def release_name_for(stack: Stack, previous: str | None = None) -> str:
    """Pinned name from the stack, else ``previous``, else a fresh one."""
    if stack.release_name:
        return stack.release_name
    if previous:
        return previous
    return generate_release_name()


def namespace_for(stack: Stack, unit: UnitDefinition) -> str:
    if unit.namespace:
        return unit.namespace
    if stack.namespace:
        return stack.namespace
    return stack.normalized_name.replace("_", "-")


def service_host(release_name: str, unit: UnitDefinition, namespace: str) -> str:
    return f"{release_name}-{unit.display_name(kebab=True)}.{namespace}.svc.cluster.local"

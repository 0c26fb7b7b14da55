"""
Tag Service - global tags deduplicated by case-insensitive name.

``create_tag("Urgent")`` followed by ``create_tag("URGENT")`` returns the
first tag both times; the second call writes nothing.
"""

import logging

from pirflow.core.exceptions import ConflictError, ValidationError

logger = logging.getLogger(__name__)

TAG_FIELDS = frozenset({"name", "category", "color"})


def _name_key(name: str) -> str:
    return name.lower()


def _clean_name(name):
    text = name.strip() if isinstance(name, str) else ""
    if not text:
        raise ValidationError("Tag name is required", details={"name": "required"})
    return text


class TagService:
    def __init__(self, store):
        self.store = store

    def find_by_name(self, name):
        matches = self.store.query("tags", {"name_key": _name_key(_clean_name(name))})
        return matches[0] if matches else None

    def create_tag(self, name, *, category=None, color=None):
        """
        Return ``(tag, created)``. An existing tag with the same name,
        ignoring case, is returned unchanged.
        """
        name = _clean_name(name)
        existing = self.find_by_name(name)
        if existing is not None:
            return existing, False

        try:
            tag_id = self.store.create("tags", {
                "name": name,
                "name_key": _name_key(name),
                "category": category,
                "color": color,
            })
        except ConflictError:
            # Lost a race on the unique name_key.
            existing = self.find_by_name(name)
            if existing is None:
                raise
            return existing, False

        logger.info("Tag created: %s (%s)", name, tag_id)
        return self.store.get("tags", tag_id), True

    def get_tag(self, tag_id):
        return self.store.get_or_404("tags", tag_id)

    def list_tags(self):
        return self.store.query("tags", order_by="name")

    def list_tags_by_category(self, category):
        return self.store.query("tags", {"category": category}, order_by="name")

    def search_tags(self, term):
        """Case-insensitive substring match on the name."""
        needle = (term or "").strip().lower()
        tags = self.list_tags()
        if not needle:
            return tags
        return [tag for tag in tags if needle in tag.name_key]

    def update_tag(self, tag_id, patch):
        tag = self.store.get_or_404("tags", tag_id)
        illegal = sorted(set(patch) - TAG_FIELDS)
        if illegal:
            raise ValidationError(
                f"Fields not editable: {', '.join(illegal)}",
                details={field: "not editable" for field in illegal},
            )

        values = dict(patch)
        if "name" in patch:
            name = _clean_name(patch["name"])
            clash = self.find_by_name(name)
            if clash is not None and clash.id != tag.id:
                raise ConflictError("Tag", "name", name)
            values["name"] = name
            values["name_key"] = _name_key(name)
        return self.store.update("tags", tag.id, values)

    def delete_tag(self, tag_id):
        self.store.delete("tags", tag_id)
        logger.info("Tag deleted: %s", tag_id)

"""Static catalog of mental-health resources and student bookmarks.

The catalog is built once at import time and is read-only. Resources are
addressed by a stable slug, never by list position.
"""
from types import MappingProxyType

from errors import NotFoundError
from models import Bookmark


def _freeze(resource_id, **fields):
    fields["specialties"] = tuple(fields.get("specialties", ()))
    return resource_id, MappingProxyType(dict(fields, id=resource_id))


CATALOG = MappingProxyType(dict([
    _freeze(
        "ustl-guidance-office",
        name="UST-Legazpi Office of Guidance and Testing",
        type="University Counseling",
        address="Aquinas University Campus, Rawis, Legazpi City",
        phone="(052) 482-0203 local 312",
        email="ogt@ust-legazpi.edu.ph",
        specialties=["Student Counseling", "Academic Support", "Career Guidance"],
        cost="Free for students",
        hours="Monday-Friday 7:30am-5:30pm",
        rating=4.5,
    ),
    _freeze(
        "dr-tan-clinic",
        name="Dr. Tan Mental Health Clinic",
        type="Private Practice",
        address="Estevez Street, Legazpi City",
        phone="Contact via UST Hospital",
        specialties=["General Psychiatry", "Depression", "Anxiety"],
        cost="₱1,500 per session",
        hours="By appointment",
        rating=4.2,
    ),
    _freeze(
        "clinica-legazpi",
        name="Clinica Legazpi - Dr. Cabacang",
        type="Mental Health Clinic",
        address="Legazpi City",
        specialties=["Clinical Psychology", "Therapy", "Mental Health Assessment"],
        cost="Varies",
        hours="By appointment",
        rating=4.0,
    ),
    _freeze(
        "ustl-hospital-psychiatry",
        name="UST-Legazpi Hospital Psychiatry Department",
        type="Hospital Service",
        address="UST-Legazpi Hospital, Legazpi City",
        phone="(052) 482-0234",
        specialties=["Psychiatry", "Crisis Intervention", "Inpatient Care"],
        cost="According to PhilHealth rates",
        hours="24/7 emergency, scheduled appointments",
        rating=4.3,
    ),
    _freeze(
        "legazpi-city-mhu",
        name="Legazpi City Mental Health Unit",
        type="Government Service",
        address="Legazpi City Health Office, Legazpi City",
        phone="(052) 480-2234",
        specialties=["Community Mental Health", "Basic Counseling", "Referrals"],
        cost="Free",
        hours="Monday-Friday 8:00am-5:00pm",
        rating=3.8,
    ),
]))


def _as_dict(resource, bookmarked=False):
    data = dict(resource)
    data["specialties"] = list(resource["specialties"])
    data["isBookmarked"] = bookmarked
    return data


def _matches(resource, needle):
    return (
        needle in resource["name"].lower()
        or needle in resource["type"].lower()
        or any(needle in specialty.lower() for specialty in resource["specialties"])
    )


class ResourceService:
    def __init__(self, store, catalog=CATALOG):
        self.store = store
        self.catalog = catalog

    def _bookmarks(self, user_id):
        if user_id is None:
            return set()
        return set(self.store.bookmarked_ids(user_id))

    def _lookup(self, resource_id):
        resource = self.catalog.get(resource_id)
        if resource is None:
            raise NotFoundError("Resource not found")
        return resource

    def types(self):
        seen = []
        for resource in self.catalog.values():
            if resource["type"] not in seen:
                seen.append(resource["type"])
        return seen

    def list_resources(self, resource_type=None, search=None, user_id=None):
        resources = list(self.catalog.values())
        if resource_type and resource_type != "all":
            resources = [r for r in resources if r["type"] == resource_type]
        if search:
            needle = search.strip().lower()
            resources = [r for r in resources if _matches(r, needle)]

        bookmarked = self._bookmarks(user_id)
        items = [_as_dict(r, r["id"] in bookmarked) for r in resources]
        return {"resources": items, "total": len(items)}

    def get_resource(self, resource_id, user_id=None):
        resource = self._lookup(resource_id)
        return _as_dict(resource, resource_id in self._bookmarks(user_id))

    def toggle_bookmark(self, resource_id, user_id):
        self._lookup(resource_id)
        existing = self.store.get_bookmark(user_id, resource_id)
        if existing is not None:
            self.store.delete(existing)
            action = "removed"
        else:
            self.store.add_bookmark(Bookmark(user_id=user_id, resource_id=resource_id))
            action = "added"
        return {
            "action": action,
            "isBookmarked": action == "added",
            "totalBookmarked": self.bookmark_count(user_id),
        }

    def bookmark_count(self, user_id):
        return sum(1 for rid in self.store.bookmarked_ids(user_id) if rid in self.catalog)

    def bookmarks(self, user_id):
        # Ids that have since left the catalog are skipped, not errors
        items = [
            _as_dict(self.catalog[rid], True)
            for rid in self.store.bookmarked_ids(user_id)
            if rid in self.catalog
        ]
        return {"resources": items, "total": len(items)}

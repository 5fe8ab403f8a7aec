import copy
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from btcc_fantasy.errors import ApiResult
from btcc_fantasy.models import Competitor, EventDescriptor, Participant

BASE_TIME = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=BASE_TIME):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeApi:
    """
    Stand-in for ApiClient.  Any method can be called; each call is recorded
    and answered from the queue registered with ``respond`` (the last
    queued answer repeats).  A queued callable is awaited with the call's
    arguments.
    """

    def __init__(self):
        self.calls = []
        self.responses = {}

    def respond(self, name, *results):
        self.responses.setdefault(name, []).extend(results)

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        async def call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            queue = self.responses.get(name)
            if not queue:
                return ApiResult.ok({})
            result = queue.pop(0) if len(queue) > 1 else queue[0]
            if callable(result):
                result = await result(*args, **kwargs)
            return result

        return call


def make_driver(id, value, *categories, name=None):
    return Competitor(id=id, name=name or f"Driver {id}", value=value, categories=list(categories))


def race_doc(id="r1", deadline=None, *, locked=False, events=True, round_number=1, name=None):
    deadline = deadline or BASE_TIME + timedelta(days=3)
    start = deadline + timedelta(hours=18)
    return {
        "id": id,
        "round_number": round_number,
        "name": name or f"Round {round_number}",
        "location": "Brands Hatch Indy",
        "events": [
            {"title": "Race 1", "start_time": start, "end_time": start + timedelta(minutes=40)},
        ] if events else [],
        "submission_deadline": deadline,
        "is_locked": locked,
        "season": 2025,
    }


def make_race(*args, **kwargs):
    return EventDescriptor.model_validate(race_doc(*args, **kwargs))


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def api():
    return FakeApi()


@pytest.fixture()
def participant():
    return Participant(id="u1", username="sam", budget=100, season=2025)


@pytest.fixture()
def catalog():
    # 6 cheapest cover M, JS and I for 74
    return [
        make_driver("d1", 20, "M", name="Ash Sutton"),
        make_driver("d2", 15, "M", name="Tom Ingram"),
        make_driver("d3", 10, "JS", name="Jake Hill"),
        make_driver("d4", 12, "JS", name="Colin Turkington"),
        make_driver("d5", 8, "I", name="Dan Rowbottom"),
        make_driver("d6", 9, "I", name="Josh Cook"),
        make_driver("d7", 25, "M", "I", name="Gordon Shedden"),
        make_driver("d8", 5, "JS", name="Daniel Lloyd"),
    ]


@pytest.fixture()
def valid_team(catalog):
    return catalog[:6]


@pytest.fixture()
def open_race():
    return make_race()


###########################
# In-memory Mongo collections for the server tests
###########################

def _matches(doc, query):
    for key, expected in query.items():
        actual = doc.get(key)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


def _project(doc, projection):
    out = copy.deepcopy(doc)
    for key, flag in (projection or {}).items():
        if not flag:
            out.pop(key, None)
    return out


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, field, direction=1):
        self._docs.sort(key=lambda d: (d.get(field) is None, d.get(field)), reverse=direction == -1)
        return self

    async def to_list(self, length=None):
        return list(self._docs if length is None else self._docs[:length])

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, docs=None):
        self.docs = [copy.deepcopy(d) for d in docs or []]

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def insert_one(self, doc):
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def update_one(self, query, update):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def delete_one(self, query):
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, query)]
        return SimpleNamespace(deleted_count=before - len(self.docs))

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    async def distinct(self, key, query=None):
        values = []
        for d in self.docs:
            if _matches(d, query or {}) and key in d and d[key] not in values:
                values.append(d[key])
        return values

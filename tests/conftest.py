"""Shared fixtures: an in-memory cloud with website-hosting resource types."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from typing import Any

import pytest

from terrik.context import ProviderContext
from terrik.errors import PermanentError
from terrik.provider import Provider, ProviderRegistry, ReplaceStrategy
from terrik.state import StateRecord

SITE_HCL = """
variable "site_name" {
  default = "example-site"
}

resource "bucket" "site" {
  bucket = "${var.site_name}"
  website {
    index_document = "index.html"
    error_document = "error.html"
  }
}

resource "bucket_policy" "public_read" {
  bucket = "${bucket.site.id}"
  policy = "allow s3:GetObject on ${bucket.site.arn}/*"
}

resource "bucket_object" "index" {
  bucket       = "${bucket.site.id}"
  key          = "index.html"
  content      = "<h1>Hello</h1>"
  content_type = "text/html"
}

resource "bucket_object" "error" {
  bucket       = "${bucket.site.id}"
  key          = "error.html"
  content      = "<h1>Oops</h1>"
  content_type = "text/html"
}

resource "distribution" "cdn" {
  origin_domain = "${bucket.site.website_endpoint}"
  default_ttl   = 3600
  depends_on    = ["bucket_policy.public_read"]
}

output "bucket_id" {
  value = "${bucket.site.id}"
}

output "cdn_domain" {
  value = "${distribution.cdn.domain_name}"
}
"""


class FakeCloud:
    """In-memory stand-in for a cloud API that records every call."""

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[Any]] = {}
        self._hooks: dict[tuple[str, str], Callable[[], Any]] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, op: str, address: str, error: Exception, *, times: int | None = 1) -> None:
        """Make the next ``times`` calls of op on address raise error (None = always)."""
        self._failures[(op, address)] = [error, times]

    def on(self, op: str, address: str, hook: Callable[[], Any]) -> None:
        """Run hook at the start of every call of op on address."""
        self._hooks[(op, address)] = hook

    def call(self, op: str, address: str) -> None:
        with self._lock:
            self.calls.append((op, address))
            hook = self._hooks.get((op, address))
        if hook is not None:
            hook()
        with self._lock:
            entry = self._failures.get((op, address))
            if entry is None:
                return
            error, remaining = entry
            if remaining is not None:
                if remaining <= 0:
                    return
                entry[1] = remaining - 1
        raise error

    def next_id(self, kind: str) -> str:
        with self._lock:
            return f"{kind}-{next(self._seq):04d}"

    def ops(self, op: str) -> list[str]:
        return [address for o, address in self.calls if o == op]


class CloudProvider(Provider):
    kind = "resource"

    def __init__(self, cloud: FakeCloud) -> None:
        self.cloud = cloud

    def assigned(self, attrs: dict[str, Any], id: str) -> dict[str, Any]:
        return {}

    def create(self, ctx: ProviderContext, attrs: dict[str, Any]) -> StateRecord:
        self.cloud.call("create", ctx.address)
        id = self.cloud.next_id(self.kind)
        full = {**attrs, **self.assigned(attrs, id)}
        self.cloud.objects[id] = full
        return ctx.record(full, id=id)

    def read(self, ctx: ProviderContext, prior: StateRecord) -> StateRecord | None:
        self.cloud.call("read", ctx.address)
        live = self.cloud.objects.get(prior.id)
        if live is None:
            return None
        return prior.model_copy(update={"attributes": dict(live)})

    def update(self, ctx: ProviderContext, attrs: dict[str, Any], prior: StateRecord) -> StateRecord:
        self.cloud.call("update", ctx.address)
        full = {**attrs, **self.assigned(attrs, prior.id)}
        self.cloud.objects[prior.id] = full
        return ctx.record(full, id=prior.id)

    def delete(self, ctx: ProviderContext, prior: StateRecord) -> None:
        self.cloud.call("delete", ctx.address)
        self.cloud.objects.pop(prior.id, None)


class Bucket(CloudProvider):
    kind = "bucket"
    required = frozenset({"bucket"})
    immutable = frozenset({"bucket"})
    computed = frozenset({"arn", "website_endpoint"})

    def assigned(self, attrs, id):
        return {
            "arn": f"arn:fake:bucket:::{attrs['bucket']}",
            "website_endpoint": f"{attrs['bucket']}.website.example.com",
        }

    def delete(self, ctx, prior):
        self.cloud.call("delete", ctx.address)
        held = [id for id, attrs in list(self.cloud.objects.items()) if attrs.get("bucket") == prior.id]
        if held:
            raise PermanentError(f"bucket {prior.id} is not empty: {', '.join(sorted(held))}")
        self.cloud.objects.pop(prior.id, None)


class BucketObject(CloudProvider):
    kind = "object"
    required = frozenset({"bucket", "key", "content"})
    immutable = frozenset({"bucket", "key"})
    computed = frozenset({"etag"})

    def assigned(self, attrs, id):
        return {"etag": f"etag-{len(str(attrs['content']))}"}


class BucketPolicy(CloudProvider):
    kind = "policy"
    required = frozenset({"bucket", "policy"})
    immutable = frozenset({"bucket"})


class Distribution(CloudProvider):
    kind = "dist"
    required = frozenset({"origin_domain"})
    immutable = frozenset({"origin_domain"})
    computed = frozenset({"domain_name"})
    replace_strategy = ReplaceStrategy.CREATE_BEFORE_DELETE

    def assigned(self, attrs, id):
        return {"domain_name": f"{id}.cdn.example.com"}


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud) -> ProviderRegistry:
    return ProviderRegistry(
        {
            "bucket": Bucket(cloud),
            "bucket_object": BucketObject(cloud),
            "bucket_policy": BucketPolicy(cloud),
            "distribution": Distribution(cloud),
        }
    )


@pytest.fixture
def site_hcl() -> str:
    return SITE_HCL

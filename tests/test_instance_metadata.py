import pytest
import requests

from conftest import FakeEC2
from instance_metadata import InstanceMetadata, lookup_tag, resolve_identity, retry, zone_domain
from route53_defaults import Settings
from route53_records import DnsServiceError, MetadataError


class FakeResponse:
    def __init__(self, text, status_code=200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, values, token="tok-123"):
        self.values = values
        self.token = token
        self.gets = []

    def put(self, url, headers, timeout):
        if self.token is None:
            raise requests.ConnectionError("token endpoint unreachable")
        return FakeResponse(self.token)

    def get(self, url, headers, timeout):
        self.gets.append((url, headers))
        path = url.split("/meta-data/", 1)[1]
        if path not in self.values:
            return FakeResponse("", 404)
        return FakeResponse(self.values[path])


def test_retry_returns_first_result():
    results = iter([None, "", "internal.example.com."])
    sleeps = []
    assert retry(lambda: next(results), sleep=sleeps.append) == "internal.example.com."
    assert sleeps == [2.0, 4.0]


def test_retry_gives_up_after_five_attempts():
    calls = []
    sleeps = []

    def fail():
        calls.append(1)
        raise RuntimeError("throttled")

    assert retry(fail, sleep=sleeps.append) is None
    assert len(calls) == 5
    assert sleeps == [2.0, 4.0, 6.0, 8.0]


def test_metadata_uses_imds_v2_token():
    session = FakeSession({"local-ipv4": "10.4.2.9\n", "instance-id": "i-0abc123"})
    metadata = InstanceMetadata(session=session)
    assert metadata.local_ipv4() == "10.4.2.9"
    assert metadata.instance_id() == "i-0abc123"
    assert session.gets[0] == ("http://169.254.169.254/latest/meta-data/local-ipv4",
                               {"X-aws-ec2-metadata-token": "tok-123"})


def test_metadata_falls_back_to_imds_v1():
    session = FakeSession({"hostname": "ip-10-4-2-9.ec2.internal"}, token=None)
    metadata = InstanceMetadata(session=session)
    assert metadata.hostname() == "ip-10-4-2-9.ec2.internal"
    assert session.gets[0][1] == {}


def test_metadata_missing_value_raises():
    metadata = InstanceMetadata(session=FakeSession({}))
    with pytest.raises(MetadataError):
        metadata.local_ipv4()


def test_lookup_tag(ec2_fake):
    assert lookup_tag(ec2_fake, "i-0abc123") == "web-7.internal.example.com"
    assert lookup_tag(ec2_fake, "i-other") is None


def test_zone_domain_strips_trailing_dot(route53_fake):
    assert zone_domain(route53_fake, "ZFORWARD", sleep=lambda s: None) == "internal.example.com"


def test_zone_domain_unknown_zone(route53_fake):
    assert zone_domain(route53_fake, "ZMISSING", sleep=lambda s: None) is None
    assert route53_fake.calls.count(("get_hosted_zone", "ZMISSING")) == 5


def test_identity_from_name_tag(settings, metadata_fake, ec2_fake, route53_fake):
    identity = resolve_identity(settings, metadata_fake, ec2_fake, route53_fake)
    assert identity == "web-7.internal.example.com"
    assert metadata_fake.calls == []


def test_identity_looks_up_instance_id_when_not_configured(metadata_fake, ec2_fake, route53_fake):
    settings = Settings(ttl=300, zone_id="ZFORWARD", region="eu-west-1")
    assert resolve_identity(settings, metadata_fake, ec2_fake, route53_fake) == "web-7.internal.example.com"
    assert metadata_fake.calls == ["instance-id"]


def test_identity_fails_without_name_tag(settings, metadata_fake, route53_fake):
    with pytest.raises(MetadataError):
        resolve_identity(settings, metadata_fake, FakeEC2(), route53_fake)


def test_identity_from_hostname(metadata_fake, ec2_fake, route53_fake):
    settings = Settings(ttl=300, zone_id="ZFORWARD", region="eu-west-1", identity_source="hostname")
    identity = resolve_identity(settings, metadata_fake, ec2_fake, route53_fake, sleep=lambda s: None)
    assert identity == "ip-10-4-2-9.internal.example.com"
    assert ec2_fake.calls == []


def test_identity_from_hostname_uses_cached_zone_domain(metadata_fake, ec2_fake, route53_fake):
    settings = Settings(ttl=300, zone_id="ZFORWARD", region="eu-west-1", identity_source="hostname",
                        zone_domain="cached.example.com")
    identity = resolve_identity(settings, metadata_fake, ec2_fake, route53_fake, sleep=lambda s: None)
    assert identity == "ip-10-4-2-9.cached.example.com"
    assert route53_fake.calls == []


def test_identity_from_hostname_needs_zone_domain(metadata_fake, ec2_fake, route53_fake):
    settings = Settings(ttl=300, zone_id="ZMISSING", region="eu-west-1", identity_source="hostname")
    with pytest.raises(DnsServiceError):
        resolve_identity(settings, metadata_fake, ec2_fake, route53_fake, sleep=lambda s: None)

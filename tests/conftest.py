import pytest
from botocore.exceptions import ClientError

from route53_defaults import Settings


class FakePaginator:
    def __init__(self, client, page_size=2):
        self.client = client
        self.page_size = page_size

    def paginate(self, HostedZoneId):
        self.client.calls.append(("list_resource_record_sets", HostedZoneId))
        if HostedZoneId not in self.client.zones:
            raise ClientError({"Error": {"Code": "NoSuchHostedZone", "Message": HostedZoneId}},
                              "ListResourceRecordSets")
        record_sets = list(self.client.zones[HostedZoneId].values())
        for i in range(0, max(len(record_sets), 1), self.page_size):
            yield {"ResourceRecordSets": record_sets[i:i + self.page_size]}


class FakeRoute53:
    """In-memory Route53 with UPSERT/DELETE semantics of the real service."""

    def __init__(self, zone_names=None):
        self.zone_names = dict(zone_names or {})
        self.zones = {zone_id: {} for zone_id in self.zone_names}
        self.calls = []
        self.batches = []

    def add_zone(self, zone_id, name):
        self.zone_names[zone_id] = name
        self.zones[zone_id] = {}

    def put(self, zone_id, name, rtype, ttl, value):
        self.zones[zone_id][(name.lower(), rtype)] = {
            "Name": name.lower(), "Type": rtype, "TTL": ttl, "ResourceRecords": [{"Value": value}],
        }

    def get_paginator(self, name):
        assert name == "list_resource_record_sets"
        return FakePaginator(self)

    def get_hosted_zone(self, Id):
        self.calls.append(("get_hosted_zone", Id))
        return {"HostedZone": {"Id": f"/hostedzone/{Id}", "Name": self.zone_names[Id]}}

    def change_resource_record_sets(self, HostedZoneId, ChangeBatch):
        self.calls.append(("change_resource_record_sets", HostedZoneId))
        self.batches.append((HostedZoneId, ChangeBatch))
        zone = self.zones[HostedZoneId]
        for change in ChangeBatch["Changes"]:
            rrset = dict(change["ResourceRecordSet"])
            rrset["Name"] = rrset["Name"].lower()
            key = (rrset["Name"], rrset["Type"])
            if change["Action"] == "UPSERT":
                zone[key] = rrset
            elif zone.get(key) == rrset:
                del zone[key]
            else:
                raise ClientError(
                    {"Error": {"Code": "InvalidChangeBatch",
                               "Message": f"Tried to delete resource record set {key} but it was not found"}},
                    "ChangeResourceRecordSets",
                )
        return {"ChangeInfo": {"Id": f"/change/C{len(self.batches)}", "Status": "PENDING"}}


class FakeEC2:
    def __init__(self, tags=None):
        self.tags = dict(tags or {})
        self.calls = []

    def describe_tags(self, Filters):
        self.calls.append(Filters)
        filters = {f["Name"]: f["Values"] for f in Filters}
        resource = filters["resource-id"][0]
        key = filters["key"][0]
        value = self.tags.get((resource, key))
        if value is None:
            return {"Tags": []}
        return {"Tags": [{"Key": key, "ResourceId": resource, "ResourceType": "instance", "Value": value}]}


class FakeMetadata:
    def __init__(self, **values):
        self.values = {
            "instance-id": "i-0abc123",
            "local-ipv4": "10.4.2.9",
            "hostname": "ip-10-4-2-9.ec2.internal",
            "placement/region": "eu-west-1",
        }
        self.values.update(values)
        self.calls = []

    def get(self, path):
        self.calls.append(path)
        return self.values[path]

    def instance_id(self):
        return self.get("instance-id")

    def local_ipv4(self):
        return self.get("local-ipv4")

    def hostname(self):
        return self.get("hostname")

    def region(self):
        return self.get("placement/region")


@pytest.fixture
def route53_fake():
    return FakeRoute53({"ZFORWARD": "internal.example.com.", "ZREVERSE": "10.in-addr.arpa."})


@pytest.fixture
def ec2_fake():
    return FakeEC2({("i-0abc123", "Name"): "web-7.internal.example.com"})


@pytest.fixture
def metadata_fake():
    return FakeMetadata()


@pytest.fixture
def settings():
    return Settings(ttl=300, zone_id="ZFORWARD", region="eu-west-1", instance_id="i-0abc123")


@pytest.fixture
def reverse_settings():
    return Settings(ttl=300, zone_id="ZFORWARD", region="eu-west-1", instance_id="i-0abc123",
                    reverse_zone_id="ZREVERSE")

"""Tests for the mDNS service description."""

from __future__ import annotations

from aioroomsync.server.advertisement import SERVICE_TYPE, build_service_info


def test_service_carries_room_and_port():
    info = build_service_info(3000, "abc123", name="studio")

    assert info.type == SERVICE_TYPE
    assert info.name == f"studio.{SERVICE_TYPE}"
    assert info.port == 3000
    assert info.properties == {b"room": b"abc123"}


def test_service_named_after_host_by_default(monkeypatch):
    monkeypatch.setattr("socket.gethostname", lambda: "kitchen")

    info = build_service_info(3000, "abc123")

    assert info.name == f"kitchen.{SERVICE_TYPE}"
    assert info.server == "kitchen.local."

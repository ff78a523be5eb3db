"""Tests for the bleak-backed transport, with bleak mocked out."""

import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bleak.exc import BleakError

from respooler_link.ble_handler import (
    BleTransport,
    LinkError,
    NoDeviceSelected,
    NotConnected,
    SubsystemUnavailable,
    WriteError,
)
from respooler_link.config import BleConfig


def device(name, address="AA:BB:CC:DD:EE:01"):
    return SimpleNamespace(name=name, address=address)


def fake_client(connected=False):
    client = MagicMock()
    client.is_connected = connected
    client.address = "AA:BB:CC:DD:EE:01"
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.start_notify = AsyncMock()
    client.stop_notify = AsyncMock()
    client.write_gatt_char = AsyncMock()
    return client


class TestAcquireLink:
    """Device selection."""

    @pytest.mark.asyncio
    async def test_name_filter(self):
        found = [device("Other"), device("LTS Respooler", "AA:BB:CC:DD:EE:02")]
        transport = BleTransport(BleConfig(name="LTS Respooler", scan_timeout=1))

        with patch(
            "respooler_link.ble_handler.BleakScanner.discover",
            new=AsyncMock(return_value=found),
        ) as discover:
            link = await transport.acquire_link()

        assert link.address == "AA:BB:CC:DD:EE:02"
        assert discover.await_args.kwargs["service_uuids"] == [BleConfig().service_uuid]

    @pytest.mark.asyncio
    async def test_custom_chooser(self):
        found = [device("A"), device("B")]
        transport = BleTransport(BleConfig(), chooser=lambda devices: devices[-1])

        with patch(
            "respooler_link.ble_handler.BleakScanner.discover",
            new=AsyncMock(return_value=found),
        ):
            link = await transport.acquire_link()

        assert link.name == "B"

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        transport = BleTransport(BleConfig())

        with patch(
            "respooler_link.ble_handler.BleakScanner.discover",
            new=AsyncMock(return_value=[]),
        ):
            with pytest.raises(NoDeviceSelected):
                await transport.acquire_link()

    @pytest.mark.asyncio
    async def test_stack_failure(self):
        transport = BleTransport(BleConfig())

        with patch(
            "respooler_link.ble_handler.BleakScanner.discover",
            new=AsyncMock(side_effect=BleakError("Bluetooth adapter not found")),
        ):
            with pytest.raises(SubsystemUnavailable):
                await transport.acquire_link()


class TestChannel:
    """Handshake, writes and teardown."""

    @pytest.mark.asyncio
    async def test_open_channel(self):
        client = fake_client()
        transport = BleTransport(BleConfig())

        with patch("respooler_link.ble_handler.BleakClient", return_value=client):
            await transport.open_channel(device("LTS Respooler"))

        client.connect.assert_awaited_once()
        client.start_notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transient_handshake_failure(self):
        client = fake_client()
        client.connect.side_effect = BleakError("Device disconnected")
        transport = BleTransport(BleConfig())

        with patch("respooler_link.ble_handler.BleakClient", return_value=client):
            with pytest.raises(LinkError) as excinfo:
                await transport.open_channel(device("LTS Respooler"))

        assert excinfo.value.transient is True

    @pytest.mark.asyncio
    async def test_missing_characteristic(self):
        client = fake_client()
        client.services.get_characteristic.return_value = None
        transport = BleTransport(BleConfig())

        with patch("respooler_link.ble_handler.BleakClient", return_value=client):
            with pytest.raises(LinkError) as excinfo:
                await transport.open_channel(device("LTS Respooler"))

        assert excinfo.value.transient is False
        client.start_notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_write_requires_channel(self):
        with pytest.raises(NotConnected):
            await BleTransport(BleConfig()).write(b"{}\n")

    @pytest.mark.asyncio
    async def test_write_failure_wrapped(self):
        client = fake_client()
        transport = BleTransport(BleConfig())
        with patch("respooler_link.ble_handler.BleakClient", return_value=client):
            await transport.open_channel(device("LTS Respooler"))
        client.is_connected = True
        client.write_gatt_char.side_effect = BleakError("write failed")

        with pytest.raises(WriteError):
            await transport.write(b'{"CMD":"STOP"}\n')

    @pytest.mark.asyncio
    async def test_callbacks(self):
        client = fake_client()
        transport = BleTransport(BleConfig())
        received, dropped = [], []
        transport.set_handlers(received.append, lambda: dropped.append(True))

        with patch("respooler_link.ble_handler.BleakClient", return_value=client):
            await transport.open_channel(device("LTS Respooler"))

        transport._handle_notification(None, bytearray(b'{"LED":1}'))
        transport._handle_disconnected(client)

        assert received == [b'{"LED":1}']
        assert dropped == [True]
        assert transport.connected is False

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_silent(self):
        client = fake_client()
        transport = BleTransport(BleConfig())
        dropped = []
        transport.set_handlers(lambda data: None, lambda: dropped.append(True))

        with patch("respooler_link.ble_handler.BleakClient", return_value=client):
            await transport.open_channel(device("LTS Respooler"))
        client.is_connected = True

        await transport.close_channel()
        await transport.close_channel()
        transport._handle_disconnected(client)

        client.disconnect.assert_awaited_once()
        assert dropped == []

    @pytest.mark.asyncio
    async def test_stop_notify_failure_logged(self, caplog):
        client = fake_client()
        client.stop_notify.side_effect = BleakError("not notifying")
        transport = BleTransport(BleConfig())

        with patch("respooler_link.ble_handler.BleakClient", return_value=client):
            await transport.open_channel(device("LTS Respooler"))
        client.is_connected = True

        with caplog.at_level(logging.DEBUG, logger="respooler_link.ble_handler"):
            await transport.close_channel()

        client.disconnect.assert_awaited_once()
        assert "not notifying" in caplog.text

from __future__ import annotations

import logging

import pytest

from relay_orchestrator.config import messages
from relay_orchestrator.services.pairing import PairingCoordinator, render_qr_png
from relay_orchestrator.tests.fakes import OPERATOR_ID


def test_render_qr_png_produces_png() -> None:
    png = render_qr_png("2@abc,def,ghi==")
    assert png.startswith(b"\x89PNG\r\n\x1a\n")


class TestPairingCoordinator:

    @pytest.mark.asyncio
    async def test_repeat_challenge_for_same_attempt_sends_one_image(self, pairing, frontend) -> None:
        for challenge in ("qr-1", "qr-2", "qr-3"):
            assert await pairing.issue_challenge(42, 1, challenge)

        assert len(frontend.images) == 1
        chat, image, caption = frontend.images[0]
        assert chat == "42"
        assert image == b"PNG:qr-1"
        assert caption == messages.PAIRING_QR_CAPTION

    @pytest.mark.asyncio
    async def test_new_attempt_delivers_again(self, pairing, frontend) -> None:
        await pairing.issue_challenge(42, 1, "qr-1")
        await pairing.issue_challenge(42, 2, "qr-2")
        assert [img for _, img, _ in frontend.images] == [b"PNG:qr-1", b"PNG:qr-2"]
        assert pairing.pending(42).attempt == 2

    @pytest.mark.asyncio
    async def test_photo_failure_falls_back_to_document(self, pairing, frontend) -> None:
        frontend.fail_images = True
        assert await pairing.issue_challenge(42, 1, "qr")

        assert frontend.images == []
        assert frontend.documents == [
            ("42", b"PNG:qr", messages.PAIRING_QR_FILENAME, messages.PAIRING_QR_DOCUMENT_CAPTION)
        ]

    @pytest.mark.asyncio
    async def test_hard_failure_notifies_user_and_operator(self, pairing, frontend, caplog) -> None:
        frontend.fail_images = True
        frontend.fail_documents = True

        with caplog.at_level(logging.WARNING, logger="relay.audit"):
            delivered = await pairing.issue_challenge(42, 1, "qr", display_name="Ada")

        assert not delivered
        assert pairing.pending(42) is None
        assert frontend.texts_to(42) == [messages.PAIRING_DELIVERY_FAILED]
        assert "Ada" in frontend.texts_to(OPERATOR_ID)[0]
        assert any("pairing_delivery_failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_render_failure_is_a_delivery_failure(self, frontend, operator) -> None:
        def broken(_challenge: str) -> bytes:
            raise ValueError("data too long")

        coordinator = PairingCoordinator(frontend, operator, renderer=broken)
        assert not await coordinator.issue_challenge(42, 1, "qr")
        assert frontend.images == []

    @pytest.mark.asyncio
    async def test_operator_failure_is_not_echoed_as_text(self, pairing, frontend) -> None:
        frontend.fail_images = True
        frontend.fail_documents = True

        assert not await pairing.issue_challenge(OPERATOR_ID, 1, "qr")
        assert frontend.texts == []

    @pytest.mark.asyncio
    async def test_resolve_forgets_pending(self, pairing) -> None:
        await pairing.issue_challenge(42, 1, "qr")
        assert pairing.resolve(42).delivered
        assert pairing.pending(42) is None

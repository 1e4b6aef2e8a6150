# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for verification codes delivered through the queue."""

import asyncio

import pytest
import pytest_asyncio

from mail_queue.exceptions import RateLimitExceeded, TaskValidationError
from mail_queue.verify_code import CodeType, VerifyCodeService, generate_code


@pytest_asyncio.fixture
async def service(queue):
    svc = VerifyCodeService(queue, email_per_minute=5, ip_per_minute=5)
    await svc.install_template()
    return svc


async def latest_code(queue, email):
    return (await queue.db.verify_codes.latest_unused(email))["code"]


class TestGenerateCode:
    def test_numeric(self):
        code = generate_code(6)
        assert len(code) == 6
        assert code.isdigit()

    def test_alpha(self):
        code = generate_code(8, CodeType.ALPHA)
        assert len(code) == 8
        assert code.isalpha() and code.isupper()


class TestSendCode:
    @pytest.mark.asyncio
    async def test_enqueues_rendered_template(self, queue, service):
        queue_id = await service.send_code("Ada@Example.com", client_ip="10.0.0.1")

        task = await queue.get_task(queue_id)
        code = await latest_code(queue, "ada@example.com")
        assert task.recipient_email == "ada@example.com"
        assert task.priority == 1
        assert task.subject == f"Your verification code: {code}"
        assert "expires in 5 minutes" in task.content

    @pytest.mark.asyncio
    async def test_new_code_invalidates_previous(self, queue, service):
        await service.send_code("ada@example.com")
        await service.send_code("ada@example.com")

        rows = await queue.db.verify_codes.select(order_by="pk")
        assert [r["status"] for r in rows] == ["INVALID", "UNUSED"]
        assert await service.verify("ada@example.com", rows[1]["code"]) is True

    @pytest.mark.asyncio
    async def test_email_rate_limit(self, queue):
        svc = VerifyCodeService(queue, email_per_minute=1)
        await svc.install_template()
        await svc.send_code("ada@example.com")

        with pytest.raises(RateLimitExceeded, match="verify_code:email:ada@example.com"):
            await svc.send_code("ada@example.com")

    @pytest.mark.asyncio
    async def test_ip_rate_limit(self, queue):
        svc = VerifyCodeService(queue, email_per_minute=10, ip_per_minute=2)
        await svc.install_template()
        await svc.send_code("a@example.com", client_ip="10.0.0.9")
        await svc.send_code("b@example.com", client_ip="10.0.0.9")

        with pytest.raises(RateLimitExceeded, match="verify_code:ip:10.0.0.9"):
            await svc.send_code("c@example.com", client_ip="10.0.0.9")

    @pytest.mark.asyncio
    async def test_unknown_code_type(self, service):
        with pytest.raises(TaskValidationError):
            await service.send_code("a@example.com", code_type="EMOJI")


class TestVerify:
    @pytest.mark.asyncio
    async def test_code_consumed_once(self, queue, service):
        await service.send_code("ada@example.com")
        code = await latest_code(queue, "ada@example.com")

        assert await service.verify("ada@example.com", "WRONG") is False
        assert await service.verify("ada@example.com", code) is True
        assert await service.verify("ada@example.com", code) is False

    @pytest.mark.asyncio
    async def test_verify_without_consume(self, queue, service):
        await service.send_code("ada@example.com")
        code = await latest_code(queue, "ada@example.com")

        assert await service.verify("ada@example.com", code, consume=False) is True
        assert await service.verify("ada@example.com", code) is True

    @pytest.mark.asyncio
    async def test_expired_code_rejected(self, queue, service):
        await service.send_code("ada@example.com")
        code = await latest_code(queue, "ada@example.com")
        await queue.db.verify_codes.execute("UPDATE verify_codes SET expires_ts = 0")

        assert await service.verify("ada@example.com", code) is False
        assert await queue.db.verify_codes.latest_unused("ada@example.com") is None

    @pytest.mark.asyncio
    async def test_unknown_address(self, service):
        assert await service.verify("nobody@example.com", "123456") is False


class TestInstallTemplate:
    @pytest.mark.asyncio
    async def test_concurrent_first_requests_install_once(self, queue):
        services = [VerifyCodeService(queue) for _ in range(4)]

        await asyncio.gather(*(svc.install_template() for svc in services))

        rows = await queue.db.templates.list_all()
        assert [r["template_code"] for r in rows] == ["VERIFY_CODE"]

    @pytest.mark.asyncio
    async def test_operator_edits_are_kept(self, queue):
        await queue.db.templates.add(
            {"template_code": "VERIFY_CODE", "subject": "Code {{ code }}", "content": "{{ code }}"}
        )

        await VerifyCodeService(queue).install_template()

        assert (await queue.db.templates.get("VERIFY_CODE"))["subject"] == "Code {{ code }}"

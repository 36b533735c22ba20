#!/usr/bin/env python3
"""
Browser Form Client - Playwright implementation of the form session protocol.

One Chromium per run, one browser context per attempt. The page stays open
after submit so the classifier can re-read it; RawOutput.release closes it.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout
from playwright.async_api import async_playwright

from core.errors import RegistrationClosedError, ThrottledError, TransportError
from core.models import RawOutput, SessionContext
from .http_form_client import (
    DEFAULT_CONSENT_FIELDS,
    DEFAULT_FIELD_MAP,
    THROTTLE_STATUSES,
    is_closed_page,
)

logger = logging.getLogger(__name__)

CHALLENGE_BOX_SELECTOR = "#captcha-box"
SUBMIT_SELECTOR = 'button[type="submit"], input[type="submit"]'


class BrowserFormClient:
    """
    Fills and submits the form in a real browser.

    Call start() before the batch and close() after it.
    """

    def __init__(
        self,
        headless: bool = True,
        field_map: Optional[Dict[str, str]] = None,
        consent_fields: Optional[List[str]] = None,
        navigation_timeout: float = 20.0,
    ):
        self.headless = headless
        self.field_map = {**DEFAULT_FIELD_MAP, **(field_map or {})}
        self.consent_fields = list(consent_fields if consent_fields is not None else DEFAULT_CONSENT_FIELDS)
        self.navigation_timeout_ms = int(navigation_timeout * 1000)

        self.playwright = None
        self.browser = None
        self._start_lock = asyncio.Lock()

    async def start(self):
        """Launch the shared browser once, however many workers ask at the same time."""
        if self.browser is not None:
            return
        async with self._start_lock:
            if self.browser is not None:
                return
            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox", "--disable-setuid-sandbox"],
            )
            logger.info(f"[Browser] Chromium started (headless={self.headless})")

    async def close(self):
        async with self._start_lock:
            if self.browser is not None:
                await self.browser.close()
                self.browser = None
            if self.playwright is not None:
                await self.playwright.stop()
                self.playwright = None

    def _selector(self, logical_name: str) -> str:
        return f'[name="{self.field_map[logical_name]}"]'

    async def submit(
        self,
        target: str,
        values: Dict[str, str],
        ctx: SessionContext,
        timeout: Optional[float] = None,
    ) -> RawOutput:
        """
        Load the form, fill it, submit, and hand back the live result page.

        Raises:
            RegistrationClosedError, ThrottledError, TransportError
        """
        await self.start()
        context = await self.browser.new_context(
            user_agent=ctx.user_agent_id,
            locale="id-ID",
            viewport={"width": 1280, "height": 800},
        )
        try:
            page = await context.new_page()
            page.set_default_timeout(self.navigation_timeout_ms)

            response = await page.goto(target, wait_until="domcontentloaded")
            if response is not None and response.status in THROTTLE_STATUSES:
                raise ThrottledError(f"HTTP {response.status}")
            if response is not None and response.status >= 500:
                raise TransportError(f"HTTP {response.status}")

            html = await page.content()
            if is_closed_page(html):
                raise RegistrationClosedError()

            token_input = await page.query_selector(self._selector("token"))
            if token_input is not None:
                ctx.anti_forgery_token = await token_input.get_attribute("value")

            await page.fill(self._selector("name"), values["name"])
            await page.fill(self._selector("identifier"), values["identifier"])
            await page.fill(self._selector("phone"), values["phone"])

            box = await page.query_selector(CHALLENGE_BOX_SELECTOR)
            challenge_input = await page.query_selector(self._selector("challenge"))
            if box is not None and challenge_input is not None:
                challenge = re.sub(r"\s+", "", await box.inner_text())
                ctx.captured_challenge_text = challenge
                if challenge:
                    await challenge_input.fill(challenge)

            for name in self.consent_fields:
                checkbox = await page.query_selector(f'[name="{name}"]')
                if checkbox is not None:
                    await checkbox.check()

            status_code = None
            async with page.expect_navigation(wait_until="domcontentloaded") as navigation:
                await page.click(SUBMIT_SELECTOR)
            result = await navigation.value
            if result is not None:
                status_code = result.status

            text = await page.content()

        except PlaywrightTimeout as e:
            await context.close()
            raise TransportError(f"browser timeout: {str(e)[:120]}")
        except PlaywrightError as e:
            await context.close()
            raise TransportError(f"browser error: {str(e)[:120]}")
        except BaseException:
            await context.close()
            raise

        async def refresh() -> str:
            return await page.content()

        return RawOutput(
            text=text,
            status_code=status_code,
            url=page.url,
            refresh=refresh,
            release=context.close,
        )

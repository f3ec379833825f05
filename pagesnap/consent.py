"""Best-effort cookie/consent banner dismissal."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .automation import AutomationPage

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentBanner:
    """A consent management platform: where its banner lives and what accepts it."""

    name: str
    banner_selector: str
    accept_selector: str = ""
    accept_texts: tuple[str, ...] = ()


@dataclass
class ConsentReport:
    clicked: list[str] = field(default_factory=list)
    hidden: int = 0
    escape_pressed: bool = False
    error: str | None = None


CONSENT_BANNERS: tuple[ConsentBanner, ...] = (
    ConsentBanner("iubenda", ".iubenda-cs-container", ".iubenda-cs-accept-btn"),
    ConsentBanner(
        "cookiebot",
        "#CybotCookiebotDialog",
        "#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll, #CybotCookiebotDialogBodyButtonAccept",
    ),
    ConsentBanner("onetrust", "#onetrust-banner-sdk", "#onetrust-accept-btn-handler, .onetrust-close-btn-handler"),
    ConsentBanner("optanon", ".optanon-alert-box-wrapper", ".optanon-allow-all, .optanon-button-allow"),
    ConsentBanner("trustarc", ".truste_box_overlay, .truste_overlay", ".pdynamicbutton .call, .trustarc-agree-btn"),
    ConsentBanner("evidon", "#_evidon_banner", "#_evidon-accept-button, #_evidon-banner-acceptbutton"),
    ConsentBanner("quantcast", ".qc-cmp2-container", '.qc-cmp2-button[mode="primary"]'),
    ConsentBanner("osano", ".osano-cm-window", ".osano-cm-accept-all, .osano-cm-button--type_accept"),
    ConsentBanner(
        "generic",
        '[class*="cookie-banner"], [class*="cookie-consent"], [class*="cookie-notice"], '
        '[id*="cookie-banner"], [id*="cookie-consent"]',
        accept_texts=("accept", "agree", "allow"),
    ),
    ConsentBanner(
        "gdpr",
        ".gdpr, .gdpr-banner, #gdpr-banner, #gdpr-cookie-notice",
        ".gdpr-consent-button, #gdpr-consent-accept, .gdpr-agree-btn",
    ),
)

_CLICK_ACCEPT_SCRIPT = """
(banners) => {
    const clicked = [];
    for (const banner of banners) {
        let container = null;
        try {
            container = document.querySelector(banner.banner_selector);
        } catch (err) {
            continue;
        }
        if (!container) {
            continue;
        }
        let button = null;
        if (banner.accept_selector) {
            try {
                button = document.querySelector(banner.accept_selector);
            } catch (err) {
                button = null;
            }
        }
        if (!button && banner.accept_texts.length) {
            const candidates = container.querySelectorAll('button, a, [role="button"]');
            for (const candidate of candidates) {
                const label = (candidate.textContent || '').trim().toLowerCase();
                if (banner.accept_texts.some((text) => label.includes(text))) {
                    button = candidate;
                    break;
                }
            }
        }
        if (button) {
            button.click();
            clicked.push(banner.name);
        }
    }
    return clicked;
}
"""

_HIDE_OVERLAYS_SCRIPT = """
() => {
    const selectors = '[class*="cookie"], [class*="consent"], [class*="gdpr"], '
        + '[id*="cookie"], [id*="consent"], [id*="gdpr"]';
    let hidden = 0;
    document.querySelectorAll(selectors).forEach((element) => {
        const style = window.getComputedStyle(element);
        if (style.position === 'fixed' || parseInt(style.zIndex, 10) > 100) {
            element.style.display = 'none';
            hidden += 1;
        }
    });
    return hidden;
}
"""


async def dismiss_consent_banners(
    page: AutomationPage,
    *,
    wait_ms: int = 0,
    banners: tuple[ConsentBanner, ...] = CONSENT_BANNERS,
) -> ConsentReport:
    """Click known accept buttons, press Escape, then hide leftover overlays.

    Never raises; failures are logged and recorded on the report.
    """

    report = ConsentReport()
    try:
        if wait_ms > 0:
            await page.wait(wait_ms)
        payload = [
            {
                "name": banner.name,
                "banner_selector": banner.banner_selector,
                "accept_selector": banner.accept_selector,
                "accept_texts": list(banner.accept_texts),
            }
            for banner in banners
        ]
        clicked = await page.evaluate(_CLICK_ACCEPT_SCRIPT, payload)
        report.clicked = list(clicked or [])
        await page.press("Escape")
        report.escape_pressed = True
        report.hidden = int(await page.evaluate(_HIDE_OVERLAYS_SCRIPT) or 0)
    except Exception as exc:
        report.error = str(exc)
        LOGGER.warning("Consent banner handling failed: %s", exc)
        return report
    if report.clicked:
        LOGGER.info("Accepted consent banners: %s", ", ".join(report.clicked))
    if report.hidden:
        LOGGER.debug("Hid %d consent overlay elements", report.hidden)
    return report

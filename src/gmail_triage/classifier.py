"""Urgency and risk classification of messages through an LLM."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

import openai
from openai import AzureOpenAI, OpenAI

from .constants import (
    AZURE_API_VERSION,
    DEFAULT_MODEL_NAME,
    DEFAULT_TIMEOUT_SECONDS,
    UNPARSEABLE_RISK_POLICIES,
)
from .errors import ClassifierError, ConfigError
from .models import RiskLevel, RiskVerdict

logger = logging.getLogger(__name__)

URGENCY_SYSTEM_PROMPT = """You are an email urgency analyzer.
Decide whether an email requires immediate attention or an urgent response.
Only mark an email urgent when it clearly needs immediate action. Consider the
sender, time-sensitive language or deadlines, business impact, and financial or
security implications.
Respond with only 'true' if urgent or 'false' if not urgent."""

RISK_SYSTEM_PROMPT = """You are an email security analyzer.
Decide whether an email poses a security risk: phishing, suspicious sender
domains, suspicious attachments or links, social engineering, pressure tactics,
typical scam language, or requests for credentials or sensitive data.

HIGH_RISK: clear and immediate threats (obvious phishing, malicious attachments,
credential requests, known scam patterns).
MODERATE_RISK: concerns that need attention (unusual requests, slightly
suspicious senders, questionable information requests).
NO_RISK: normal communication.

Respond with exactly one of HIGH_RISK, MODERATE_RISK or NO_RISK on the first
line, followed by a bullet-point explanation of the risks identified."""

REVIEW_EXPLANATION = "The risk classifier returned an unrecognized verdict; flagged for manual review."


class Classifier(Protocol):
    """Capability the classification pipeline depends on.

    Implementations raise :class:`ClassifierError` on failure or timeout.
    """

    def classify_urgency(self, subject: str, body: str, sender: str) -> bool: ...

    def classify_risk(
        self, subject: str, body: str, sender: str, attachments: Sequence[str]
    ) -> RiskVerdict: ...


def parse_urgency_response(text: str) -> bool:
    return text.strip().strip("`*'\". ").lower() == "true"


def parse_risk_response(text: str, unparseable: str = "review") -> RiskVerdict:
    """Parse "<LEVEL>\\n<explanation>" into a verdict.

    An unrecognized level resolves to MODERATE (``"review"``, fail-closed) or
    NONE (``"ignore"``, fail-open).
    """
    first, _, rest = text.strip().partition("\n")
    token = first.strip().strip("`*'\".: ").upper()
    explanation = rest.strip()
    for level in RiskLevel:
        if token == level.value:
            return RiskVerdict(level=level, explanation=explanation)

    logger.warning("Unrecognized risk verdict %r (policy: %s)", first[:40], unparseable)
    if unparseable == "ignore":
        return RiskVerdict(level=RiskLevel.NONE)
    return RiskVerdict(level=RiskLevel.MODERATE, explanation=REVIEW_EXPLANATION)


class OpenAIClassifier:
    """Classifier backed by the OpenAI chat completions API (or Azure OpenAI)."""

    def __init__(
        self,
        client: OpenAI,
        model: str = DEFAULT_MODEL_NAME,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        unparseable_risk: str = "review",
    ) -> None:
        if unparseable_risk not in UNPARSEABLE_RISK_POLICIES:
            raise ConfigError(f"Unknown unparseable-risk policy: {unparseable_risk}")
        self._client = client
        self.model = model
        self.timeout = timeout
        self.unparseable_risk = unparseable_risk

    @classmethod
    def from_settings(cls, settings) -> OpenAIClassifier:  # noqa: ANN001
        if settings.azure_openai_endpoint:
            client = AzureOpenAI(
                azure_endpoint=settings.azure_openai_endpoint,
                api_key=settings.azure_openai_key,
                api_version=AZURE_API_VERSION,
                timeout=settings.timeout_seconds,
                max_retries=0,
            )
        elif settings.openai_api_key:
            client = OpenAI(api_key=settings.openai_api_key, timeout=settings.timeout_seconds, max_retries=0)
        else:
            raise ConfigError("Set AZURE_OPENAI_ENDPOINT/AZURE_OPENAI_KEY or OPENAI_API_KEY")
        return cls(
            client,
            model=settings.model_name,
            timeout=settings.timeout_seconds,
            unparseable_risk=settings.unparseable_risk,
        )

    def _complete(self, system: str, user: str) -> str:
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                timeout=self.timeout,
            )
        except openai.APITimeoutError as exc:
            raise ClassifierError(f"Classifier timed out after {self.timeout}s") from exc
        except openai.OpenAIError as exc:
            raise ClassifierError(f"Classifier request failed: {exc}") from exc

        if not completion.choices:
            raise ClassifierError("Classifier returned no choices")
        content = completion.choices[0].message.content
        if content is None:
            raise ClassifierError("Classifier returned an empty message")
        return content

    def classify_urgency(self, subject: str, body: str, sender: str) -> bool:
        user = f"Please analyze this email:\nFrom: {sender}\nSubject: {subject}\n\nBody:\n{body}"
        logger.debug("Urgency request for %r (%d chars)", subject, len(user))
        answer = self._complete(URGENCY_SYSTEM_PROMPT, user)
        logger.info("Urgency verdict for %r: %s", subject, answer.strip()[:20])
        return parse_urgency_response(answer)

    def classify_risk(self, subject: str, body: str, sender: str, attachments: Sequence[str]) -> RiskVerdict:
        user = (
            f"Please analyze this email:\nFrom: {sender}\nSubject: {subject}\n"
            f"Attachments: {', '.join(attachments)}\n\nBody:\n{body}"
        )
        answer = self._complete(RISK_SYSTEM_PROMPT, user)
        verdict = parse_risk_response(answer, self.unparseable_risk)
        logger.info("Risk verdict for %r: %s", subject, verdict.level.value)
        return verdict

"""Process-wide collaborators, built once from Settings at startup."""

import logging
from dataclasses import dataclass

from ballotflow.config import Settings
from ballotflow.services.gemini import GeminiGenerator
from ballotflow.services.mailer import ResendMailer
from ballotflow.services.notifications import UploadNotifier
from ballotflow.services.prompts import PromptBundle, load_prompts

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    settings: Settings
    prompts: PromptBundle
    generator: GeminiGenerator
    mailer: ResendMailer
    notifier: UploadNotifier


def build_services(settings: Settings) -> PipelineServices:
    prompts = load_prompts(settings)
    mailer = ResendMailer(settings.resend_api_key, settings.resend_from)
    if mailer.dry_run:
        logger.warning("RESEND_API_KEY not set; notifications will be logged, not sent")
    if not settings.gemini_enabled:
        logger.info("Gemini disabled; AI stages return mock output")
    return PipelineServices(
        settings=settings,
        prompts=prompts,
        generator=GeminiGenerator(settings),
        mailer=mailer,
        notifier=UploadNotifier(mailer, settings),
    )

#!/usr/bin/env python3
"""Store the sample prompt templates.

Usage:
  REDIS_URL=redis://localhost:6379/0 python scripts/seed.py
"""
import asyncio
import logging
from typing import List

from promptlab.config import configure_logging, get_settings
from promptlab.redis_helper import create_redis
from promptlab.schemas import Template
from promptlab.store import RedisTemplateStore, TemplateStore

logger = logging.getLogger("promptlab.seed")

SAMPLE_TEMPLATES = [
    {
        "name": "Blog Post Writer",
        "system_prompt": "You are a professional blog writer. Write engaging, informative content.",
        "user_prompt": "Write a blog post about: {{input}}",
    },
    {
        "name": "Code Reviewer",
        "system_prompt": "You are an expert code reviewer. Provide constructive feedback.",
        "user_prompt": "Review this code and suggest improvements:\n\n{{input}}",
    },
    {
        "name": "Email Composer",
        "system_prompt": "You are a professional email writer. Write clear, concise emails.",
        "user_prompt": "Compose an email about: {{input}}",
    },
]


async def seed_templates(templates: TemplateStore) -> List[Template]:
    existing = {t.name for t in await templates.list()}
    created = []
    for sample in SAMPLE_TEMPLATES:
        if sample["name"] in existing:
            logger.info("seed: %s already present", sample["name"])
            continue
        template = await templates.put(Template(variables_schema={"input": "string"}, **sample))
        logger.info("seed: created %s (%s)", template.name, template.id)
        created.append(template)
    return created


async def main():
    settings = get_settings()
    redis_client = create_redis(settings)
    try:
        await seed_templates(RedisTemplateStore(redis_client))
    finally:
        await redis_client.aclose()


if __name__ == "__main__":
    configure_logging(get_settings().log_level)
    asyncio.run(main())

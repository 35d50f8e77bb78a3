"""
API router aggregation

Every feature router is mounted on ``api_router``, which ``clubbilling/main.py``
serves under ``settings.API_V1_STR``. Path prefixes live in each module.

- tiers: membership tier templates
- mandates: payer Direct Debit mandates
- subscriptions: subscription lifecycle
- billing_config: dunning policy and club billing settings
- workers: manual triggers and execution history
- diagnostics: drift report and on-demand sync
- webhooks: GoCardless event intake
- utils: health check
"""
from fastapi import APIRouter

from clubbilling.api.routes import (
    billing_config,
    diagnostics,
    mandates,
    subscriptions,
    tiers,
    utils,
    webhooks,
    workers,
)

api_router = APIRouter()

api_router.include_router(tiers.router)  # /tiers/*
api_router.include_router(mandates.router)  # /mandates/*
api_router.include_router(subscriptions.router)  # /subscriptions/*
api_router.include_router(billing_config.router)  # /billing-config/*
api_router.include_router(workers.router)  # /workers/*
api_router.include_router(diagnostics.router)  # /diagnostics/*
api_router.include_router(webhooks.router)  # /webhooks/*
api_router.include_router(utils.router)  # /utils/*

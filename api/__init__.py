"""Onboarding Saga — HTTP surface."""

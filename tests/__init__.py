"""Tests for plansync."""

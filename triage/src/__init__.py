"""Triage core: schedulers, sessions and the item state tracker."""

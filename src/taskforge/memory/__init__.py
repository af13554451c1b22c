"""Durable workspace state: task records, runs, locks and job bookkeeping."""

"""
Services for the chain sync pipeline.

This module organizes services into:
- indexer: Resumable log scanning over watched contracts
- pool_mirror / oddyssey_mirror: Event handlers projecting chain state into the DB
- results_fetcher / outcomes: External fixture results and their derivations
- oracle_submitter / settlement: Feeding outcomes to the guided oracle and settling pools
- match_selector / oddyssey_driver / slip_evaluator: The daily Oddyssey cycle
- health: Component heartbeats
"""

"""Rule evaluator contract and the bundled condition-table evaluator."""

"""Declarative workflow graph.

- nodes: Tagged node variants, choice predicates, retry policy
- graph: Immutable validated graph and parallel branches
- merge: Named-slot merge of parallel branch results
- account_closure: The account-closure graph definition
"""

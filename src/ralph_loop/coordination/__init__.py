"""Coordination substrate shared by workers and monitors of one loop.

Participants never talk to each other. Every invocation starts cold and
works only from what is on disk under the state directory:

- ``steps/<id>.json`` is the ground truth for one step; ``steps/<id>.lock``
  is its exclusivity token, created with exclusive-create semantics.
- ``ralph-state.json`` is the ledger: loop metadata plus a cache of step
  statuses. It is only rewritten under ``ralph-state.lock`` after re-reading
  the on-disk copy.
- ``validation/iteration-<N>.json`` holds one immutable monitor verdict per
  iteration; the newest one is chosen by numeric iteration.

There is no lock expiry. A crashed participant leaves its lock behind and an
operator clears it with the archiver's lock cleanup.
"""

# Services package.
#
#   post_service   PostService: cache-aside reads, ownership checks and
#                  the store -> invalidate -> publish write sequence
#   notifications  event subscribers (job enqueue, live broadcast) and
#                  the ``post-created`` job handler run by the workers
#
# Services receive their collaborators through the constructor; the
# composition root in ``posthub.container`` builds and wires them.

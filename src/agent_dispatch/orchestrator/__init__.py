"""Task execution core for queue-delivered CLI agent tasks.

One delivered message is one pass: decode the envelope, provision a sandbox
directory named by the correlation id, run the agent binary in its own
process group under a hard deadline, then post stdout to the reply sink.

Retries are not performed here. Each pass only classifies its failure as
retryable (leave the message for redelivery) or terminal (acknowledge it
without notifying the reply sink). Bounded redelivery and dead-lettering
belong to the queue.
"""

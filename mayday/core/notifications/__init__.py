"""
Notification routing and delivery.

- domain / preferences / routes - types, recipient preferences, route policy
- router - channel selection, send rules, lifecycle transitions
- delivery - claim, send and record one attempt
- retry_worker - background poller for due retries
"""

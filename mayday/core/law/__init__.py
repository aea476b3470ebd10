"""
Law rule engine.

- ``domain`` - trigger categories, rule and result types
- ``table``  - rule table protocol, jurisdiction precedence, JSON loader
- ``engine`` - ordering/aggregation and fail-open evaluation
"""

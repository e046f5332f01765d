"""Build engines for Baker.

One engine per asset class: assets, styles, scripts and templates. All of
them share the discovery, dependency tracking and watch behaviour of
``baker.engines.base.Engine``.
"""

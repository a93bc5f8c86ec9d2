"""Domain services for Clinport.

Pure business logic with no infrastructure dependencies: value
normalization (``normalization``) and the reconciling persister
(``reconciler``). Import from the submodules directly.
"""

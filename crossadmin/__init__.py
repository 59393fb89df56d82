"""Delegated cross-tenant administration provisioning.

To run the access package pipeline:
    from crossadmin.core.access_package import build_pipeline

To deploy and verify Lighthouse delegations:
    from crossadmin.core.lighthouse import LighthouseDeployer, run_lighthouse

To use the Graph / ARM services directly:
    from crossadmin.core.azure import GraphClient, ArmClient, GroupService
"""

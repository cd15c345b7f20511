"""
Collaborator stores consumed by the detection pipeline.
"""

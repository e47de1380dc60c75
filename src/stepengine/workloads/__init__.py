"""
Concrete steps:
 - process_lifecycle -- keeps a worker process running on the node for a given duration
 - resource_iteration -- repeatedly creates and deletes a VM resource group
"""

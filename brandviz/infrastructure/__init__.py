"""
Clientes externos: MongoDB, LLMs, QStash y SendGrid
"""

"""Loadout equip orchestration.

Resolves where a loadout's items are, moves them through the vault, equips them
and keeps the Redis item cache in line with the remote account.
"""

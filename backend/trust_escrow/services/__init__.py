"""Trust & Escrow Engine - Services"""

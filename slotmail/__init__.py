"""
slotmail - Store-and-forward mail over a publish/subscribe key space

Two parties who share no direct channel exchange mail by inserting data
under keys the other side can predict, and polling for keys at which new
data might appear.
"""

__version__ = "0.1.0"
__author__ = "slotmail Project"

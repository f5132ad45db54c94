"""Notification dispatch and realtime delivery service.

The package re-exports nothing; the file only keeps ``notifyhub`` a regular
package so it is never resolved as a namespace package from site-packages.
"""

"""
Device-side components: local chat-session cache, realtime trackers,
notification channel selection and the native-wrapper bridge.
"""

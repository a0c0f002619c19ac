"""
Messaging SMS - message delivery and inbound-routing core

Provides:
- Messaging service registry with number sticking
- Provider adapters (Twilio, Nexmo, Assemble Numbers, fake service)
- Outbound send, inbound ingestion and delivery report pipelines
- Redis Streams plumbing for deferred inbound reassembly

Campaign, contact and user management live outside this package; the
core only reads the rows it needs to route a message.
"""
